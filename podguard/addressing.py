"""
IPv4 address conversions for the two byte-order domains PodGuard touches.

The flag table and the event stream serialize addresses differently:

- ``table_key_from_ip`` produces the u32 key written into the flag table.
  The classifier looks up ``ip->saddr`` as it sits in the packet, so the key
  is the four address octets read as a little-endian integer.
- ``ip_from_wire`` renders a u32 taken from a decoded flow record. The
  record is decoded little-endian and the address field still carries the
  octets in packet order, so the lowest byte is the first octet.
"""

import ipaddress
import socket
import struct
from typing import Optional


class AddressError(ValueError):
    """Raised when an address cannot be converted."""
    pass


def parse_ipv4(address: str) -> Optional[ipaddress.IPv4Address]:
    """Return the IPv4 address for a dotted quad, or None for anything else."""
    try:
        parsed = ipaddress.ip_address(address.strip())
    except (ValueError, AttributeError):
        return None
    if isinstance(parsed, ipaddress.IPv4Address):
        return parsed
    return None


def table_key_from_ip(address: str) -> int:
    """
    Encode a dotted-quad pod IP as the flag table key.

    Args:
        address: IPv4 address, e.g. "10.0.0.5"

    Returns:
        u32 whose little-endian bytes are the address octets
        (10.0.0.5 -> 0x0500000a)

    Raises:
        AddressError: If the address is not IPv4
    """
    parsed = parse_ipv4(address)
    if parsed is None:
        raise AddressError(f"Not an IPv4 address: {address!r}")
    return struct.unpack('<I', parsed.packed)[0]


def ip_from_wire(value: int) -> str:
    """
    Render an address field from a flow record as a dotted quad.

    Args:
        value: u32 as decoded from the little-endian record

    Returns:
        Dotted quad with the lowest byte first (0x0500000a -> "10.0.0.5")
    """
    return socket.inet_ntoa(struct.pack('<I', value & 0xFFFFFFFF))


__all__ = [
    'AddressError',
    'parse_ipv4',
    'table_key_from_ip',
    'ip_from_wire',
]
