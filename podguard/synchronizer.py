"""
Policy Synchronizer - periodic reconciliation of cluster state.

Every cycle lists the matching pods on this node, publishes a fresh identity
snapshot and upserts one enforcement flag per pod. Each cycle is a full
rebuild: nothing is diffed against the previous one, so a missed pod
deletion is corrected on the next tick. Entries for pods that went away
stay in the flag table until their address is reused.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .addressing import parse_ipv4, table_key_from_ip
from .constants import Defaults
from .ebpf.engine import EnforcementFlag, FlagTable, TableWriteError
from .identity import IdentitySnapshot, IdentityTable, PodIdentity
from .kube import PodInfo, PodSourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnforcementEntry:
    """One flag table write."""
    address: str
    key: int
    flag: EnforcementFlag


@dataclass
class SyncResult:
    """Outcome of one synchronization cycle."""
    success: bool
    monitored: int = 0
    written: int = 0
    write_failures: int = 0
    block_mode: bool = False
    version: int = 0
    error: str = ""
    entries: Optional[List[EnforcementEntry]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'monitored': self.monitored,
            'written': self.written,
            'write_failures': self.write_failures,
            'block_mode': self.block_mode,
            'version': self.version,
            'error': self.error,
        }


def select_monitored(pods: List[PodInfo]) -> List[PodInfo]:
    """Pods in the Running phase with an assigned address."""
    return [pod for pod in pods if pod.is_running and pod.has_address]


class PolicySynchronizer:
    """
    Periodically pushes cluster state into the identity table and flag table.

    Usage:
        sync = PolicySynchronizer(pod_source, flag_table, identity_table,
                                  node_name="node-1",
                                  selector={"monitor": "external"})
        sync.start()
        ...
        sync.stop()
    """

    def __init__(
        self,
        pod_source: Any,
        flag_table: FlagTable,
        identity_table: IdentityTable,
        node_name: str,
        selector: Mapping[str, str],
        block_external: bool = False,
        interval: float = Defaults.SYNC_INTERVAL,
    ):
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError(f"sync interval must be a finite positive number, got {interval}")

        self.pod_source = pod_source
        self.flag_table = flag_table
        self.identity_table = identity_table
        self.node_name = node_name
        self.selector = dict(selector)
        self.block_external = block_external
        self.interval = interval

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        self._cycles = 0
        self._failed_cycles = 0
        self._last_result: Optional[SyncResult] = None
        self._last_sync: float = 0.0

    def sync_once(self) -> SyncResult:
        """Run one synchronization cycle."""
        try:
            pods = self.pod_source.list_pods(self.node_name, self.selector)
        except PodSourceError as e:
            logger.error(f"Error listing pods: {e}")
            return self._record(SyncResult(
                success=False,
                block_mode=self.block_external,
                version=self.identity_table.version,
                error=str(e),
            ))

        monitored = select_monitored(pods)
        snapshot = self.identity_table.publish(
            PodIdentity(address=pod.pod_ip, name=pod.name, namespace=pod.namespace)
            for pod in monitored
        )

        flag = EnforcementFlag.for_block_mode(self.block_external)
        entries, failures = self._write_flags(snapshot, flag)

        logger.info(
            f"Now monitoring {len(snapshot)} pod(s) - Block mode: {self.block_external}"
        )
        return self._record(SyncResult(
            success=True,
            monitored=len(snapshot),
            written=len(entries),
            write_failures=failures,
            block_mode=self.block_external,
            version=snapshot.version,
            entries=entries,
        ))

    def _write_flags(
        self,
        snapshot: IdentitySnapshot,
        flag: EnforcementFlag,
    ) -> Tuple[List[EnforcementEntry], int]:
        entries = []
        failures = 0
        mode = "BLOCK" if flag == EnforcementFlag.BLOCK else "monitor"
        for address, identity in snapshot.items():
            if parse_ipv4(address) is None:
                logger.debug(f"Skipping non-IPv4 address {address} of pod {identity.name}")
                continue

            key = table_key_from_ip(address)
            try:
                self.flag_table.put(key, flag)
            except TableWriteError as e:
                logger.error(f"Error adding pod {identity.name} to blocking map: {e}")
                failures += 1
                continue

            entries.append(EnforcementEntry(address=address, key=key, flag=flag))
            logger.debug(
                f"Added pod {identity.name} (IP: {address}, uint32: 0x{key:08x}) in {mode} mode"
            )
        return entries, failures

    def _record(self, result: SyncResult) -> SyncResult:
        with self._lock:
            self._cycles += 1
            if not result.success:
                self._failed_cycles += 1
            self._last_result = result
            self._last_sync = time.time()
        return result

    def start(self) -> None:
        """Run an initial cycle now, then one every interval, in a thread."""
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="policy-synchronizer",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            f"Policy synchronizer started (interval: {self.interval}s, node: {self.node_name})"
        )

    def stop(self, timeout: float = Defaults.SHUTDOWN_TIMEOUT) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Policy synchronizer did not stop within timeout")
            self._thread = None
        logger.info("Policy synchronizer stopped")

    def _run_loop(self) -> None:
        while True:
            try:
                self.sync_once()
            except Exception as e:
                logger.exception(f"Unexpected error in synchronization cycle: {e}")

            try:
                stopped = self._stop_event.wait(self.interval)
            except (OverflowError, ValueError) as e:
                logger.error(
                    f"Cannot wait {self.interval}s between cycles ({e}), "
                    f"using {Defaults.SYNC_INTERVAL}s"
                )
                self.interval = Defaults.SYNC_INTERVAL
                stopped = self._stop_event.wait(self.interval)
            if stopped:
                return

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> Optional[SyncResult]:
        with self._lock:
            return self._last_result

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'cycles': self._cycles,
                'failed_cycles': self._failed_cycles,
                'last_sync': self._last_sync,
                'last_result': self._last_result.to_dict() if self._last_result else None,
                'interval': self.interval,
                'node_name': self.node_name,
                'selector': dict(self.selector),
                'block_external': self.block_external,
            }


__all__ = [
    'EnforcementEntry',
    'SyncResult',
    'PolicySynchronizer',
    'select_monitored',
]
