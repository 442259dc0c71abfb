"""
eBPF Enforcement Engine for PodGuard

The in-kernel half of the system: a TC classifier attached to host-side veth
interfaces that reports every IPv4 packet a pod sends and drops packets from
addresses flagged BLOCK.

Requirements:
- Linux kernel 5.8+ (BPF ring buffer)
- bcc installed (python3-bpfcc)
- CAP_BPF and CAP_NET_ADMIN capabilities
"""

from .engine import (
    BCC_AVAILABLE,
    EnforcementFlag,
    EngineLoadError,
    TableWriteError,
    StreamClosedError,
    FlagTable,
    EventReader,
    BccFlagTable,
    RingBufferReader,
    EnforcementEngine,
)

from .events import (
    FlowDecodeError,
    FlowRecord,
    RawFlowRecord,
    decode_flow_record,
    protocol_name,
)

__all__ = [
    # Engine
    'BCC_AVAILABLE',
    'EnforcementFlag',
    'EngineLoadError',
    'TableWriteError',
    'StreamClosedError',
    'FlagTable',
    'EventReader',
    'BccFlagTable',
    'RingBufferReader',
    'EnforcementEngine',

    # Records
    'FlowDecodeError',
    'FlowRecord',
    'RawFlowRecord',
    'decode_flow_record',
    'protocol_name',
]
