"""
Flow record codec.

The classifier emits a fixed 20-byte little-endian record per packet. This
module decodes it into a FlowRecord with dotted-quad addresses and names
the protocol.
"""

import ctypes as ct
from dataclasses import dataclass
from typing import Any, Dict

from ..addressing import ip_from_wire
from ..constants import EngineLayout, Protocols


class FlowDecodeError(ValueError):
    """Raised when a raw record does not match the flow record layout."""
    pass


class RawFlowRecord(ct.LittleEndianStructure):
    """Wire layout of struct flow_record."""
    _pack_ = 1
    _fields_ = [
        ("saddr", ct.c_uint32),
        ("daddr", ct.c_uint32),
        ("sport", ct.c_uint16),
        ("dport", ct.c_uint16),
        ("protocol", ct.c_uint8),
        ("blocked", ct.c_uint8),
        ("found_in_table", ct.c_uint8),
        ("flag_value", ct.c_uint8),
        ("lookup_addr", ct.c_uint32),
    ]


def check_record_layout(record_type: type = RawFlowRecord,
                        expected: int = EngineLayout.FLOW_RECORD_SIZE) -> None:
    """Raise ImportError if the ctypes layout drifts from the classifier's record."""
    size = ct.sizeof(record_type)
    if size != expected:
        raise ImportError(f"{record_type.__name__} is {size} bytes, expected {expected}")


check_record_layout()


@dataclass(frozen=True)
class FlowRecord:
    """One decoded flow observation from the enforcement engine."""
    src_addr: str
    dst_addr: str
    src_port: int
    dst_port: int
    protocol: int
    blocked: bool
    found_in_table: bool
    flag_value: int
    lookup_addr: int

    @property
    def protocol_name(self) -> str:
        return protocol_name(self.protocol)

    @property
    def has_ports(self) -> bool:
        return self.src_port > 0 and self.dst_port > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'src_addr': self.src_addr,
            'dst_addr': self.dst_addr,
            'src_port': self.src_port,
            'dst_port': self.dst_port,
            'protocol': self.protocol_name,
            'blocked': self.blocked,
            'found_in_table': self.found_in_table,
            'flag_value': self.flag_value,
            'lookup_addr': f"0x{self.lookup_addr:08x}",
        }


def protocol_name(protocol: int) -> str:
    """ICMP/TCP/UDP by name, anything else as proto-<n>."""
    return Protocols.NAMES.get(protocol, f"proto-{protocol}")


def decode_flow_record(data: bytes) -> FlowRecord:
    """
    Decode one raw record.

    Trailing bytes past the record layout are ignored.

    Raises:
        FlowDecodeError: If the buffer is shorter than a record
    """
    if data is None or len(data) < EngineLayout.FLOW_RECORD_SIZE:
        size = 0 if data is None else len(data)
        raise FlowDecodeError(
            f"short flow record: {size} bytes, need {EngineLayout.FLOW_RECORD_SIZE}"
        )

    raw = RawFlowRecord.from_buffer_copy(bytes(data[:EngineLayout.FLOW_RECORD_SIZE]))
    return FlowRecord(
        src_addr=ip_from_wire(raw.saddr),
        dst_addr=ip_from_wire(raw.daddr),
        src_port=raw.sport,
        dst_port=raw.dport,
        protocol=raw.protocol,
        blocked=raw.blocked == 1,
        found_in_table=raw.found_in_table == 1,
        flag_value=raw.flag_value,
        lookup_addr=raw.lookup_addr,
    )


__all__ = [
    'FlowDecodeError',
    'RawFlowRecord',
    'FlowRecord',
    'check_record_layout',
    'protocol_name',
    'decode_flow_record',
]
