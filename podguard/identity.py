"""
Endpoint Identity Table - maps pod IPv4 addresses to pod names.

The table holds one immutable IdentitySnapshot at a time. The policy
synchronizer builds a complete snapshot off to the side and publishes it
with a single reference swap; the flow pipeline reads whichever snapshot is
current. The lock only guards the swap and the reference read, never the
build or the iteration over a snapshot.
"""

import threading
import time
from dataclasses import dataclass
from collections.abc import Mapping
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Optional


@dataclass(frozen=True)
class PodIdentity:
    """Who owns an address in a given snapshot."""
    address: str
    name: str
    namespace: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            'address': self.address,
            'name': self.name,
            'namespace': self.namespace,
        }


class IdentitySnapshot(Mapping):
    """
    Immutable address -> PodIdentity mapping.

    Duplicate addresses in the input resolve last-writer-wins.
    """

    def __init__(
        self,
        identities: Iterable[PodIdentity] = (),
        version: int = 0,
        created_at: Optional[float] = None,
    ):
        entries: Dict[str, PodIdentity] = {}
        for identity in identities:
            entries[identity.address] = identity
        self._entries = MappingProxyType(entries)
        self.version = version
        self.created_at = created_at if created_at is not None else time.time()

    def __getitem__(self, address: str) -> PodIdentity:
        return self._entries[address]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"IdentitySnapshot(version={self.version}, pods={len(self)})"

    def pod_name(self, address: str) -> Optional[str]:
        identity = self._entries.get(address)
        return identity.name if identity else None

    def as_name_map(self) -> Dict[str, str]:
        """Plain address -> pod name copy, for logs and tests."""
        return {address: identity.name for address, identity in self._entries.items()}


class IdentityTable:
    """
    Single-writer, multi-reader holder of the current IdentitySnapshot.

    Usage:
        table = IdentityTable()
        table.publish([PodIdentity("10.0.0.5", "web-1")])
        identity = table.lookup("10.0.0.5")
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = IdentitySnapshot()
        self._version = 0

    def publish(self, identities: Iterable[PodIdentity]) -> IdentitySnapshot:
        """
        Build a new snapshot and make it current.

        Args:
            identities: Every pod that belongs in the next snapshot

        Returns:
            The published snapshot
        """
        # Single writer: _version only advances here
        snapshot = IdentitySnapshot(identities, version=self._version + 1)
        with self._lock:
            self._snapshot = snapshot
            self._version = snapshot.version
        return snapshot

    def current(self) -> IdentitySnapshot:
        """Return the snapshot that is current right now."""
        with self._lock:
            return self._snapshot

    def lookup(self, address: str) -> Optional[PodIdentity]:
        """Resolve an address against the current snapshot."""
        with self._lock:
            snapshot = self._snapshot
        return snapshot.get(address)

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def __len__(self) -> int:
        return len(self.current())


__all__ = [
    'PodIdentity',
    'IdentitySnapshot',
    'IdentityTable',
]
