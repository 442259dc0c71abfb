"""
Flow Event Pipeline - turns raw classifier records into pod observations.

Runs a blocking read loop over the engine's event reader. Records whose
source address is not in the current identity snapshot are dropped without
a log line; everything else is rendered as one observation on the
``podguard.flows`` logger. The loop ends only when the reader is closed.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .ebpf.engine import EventReader, StreamClosedError
from .ebpf.events import FlowDecodeError, FlowRecord, decode_flow_record
from .identity import IdentityTable

logger = logging.getLogger(__name__)
flow_logger = logging.getLogger("podguard.flows")

ACTION_ALLOWED = "ALLOWED"
ACTION_BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class FlowObservation:
    """A flow attributed to a monitored pod."""
    pod_name: str
    namespace: str
    record: FlowRecord

    @property
    def action(self) -> str:
        return ACTION_BLOCKED if self.record.blocked else ACTION_ALLOWED

    def diagnostics(self) -> str:
        """Flag table view of the classifier at the time of the packet."""
        rec = self.record
        return (
            f"[map_lookup={str(rec.found_in_table).lower()}, "
            f"flag={rec.flag_value}, lookup_ip=0x{rec.lookup_addr:08x}]"
        )

    def render(self) -> str:
        rec = self.record
        line = (
            f"[{self.pod_name}] {self.action}: {rec.src_addr} -> {rec.dst_addr}  "
            f"[{rec.protocol_name}]"
        )
        if rec.has_ports:
            line = f"{line} {rec.src_port} -> {rec.dst_port}"
        return f"{line} {self.diagnostics()}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'pod': self.pod_name,
            'namespace': self.namespace,
            'action': self.action,
        }
        data.update(self.record.to_dict())
        if not self.record.has_ports:
            data.pop('src_port')
            data.pop('dst_port')
        return data


ObservationCallback = Callable[[FlowObservation], None]


class FlowEventPipeline:
    """
    Reads, decodes, attributes and reports flow records.

    Usage:
        pipeline = FlowEventPipeline(engine.open_event_reader(), identity_table)
        pipeline.start()
        ...
        reader.close()
        pipeline.join()
    """

    def __init__(self, reader: EventReader, identity_table: IdentityTable):
        self.reader = reader
        self.identity_table = identity_table

        self._callbacks: List[ObservationCallback] = []
        self._thread: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self._stats = {
            'records_read': 0,
            'decode_errors': 0,
            'read_errors': 0,
            'dropped_unmonitored': 0,
            'observed': 0,
            'blocked': 0,
            'callback_errors': 0,
        }

    def add_callback(self, callback: ObservationCallback) -> None:
        """Add a callback invoked for every observation."""
        self._callbacks.append(callback)

    def run(self) -> None:
        """Read until the reader is closed."""
        logger.info("Monitoring network traffic from pods...")
        while True:
            try:
                raw = self.reader.read()
            except StreamClosedError:
                logger.info("Event stream closed, flow pipeline stopping")
                return
            except Exception as e:
                self._count('read_errors')
                logger.error(f"Reading from ring buffer: {e}")
                continue

            self.process(raw)

    def process(self, raw: bytes) -> Optional[FlowObservation]:
        """
        Handle one raw record.

        Returns:
            The observation, or None if the record was malformed or its
            source is not a monitored pod
        """
        self._count('records_read')
        try:
            record = decode_flow_record(raw)
        except FlowDecodeError as e:
            self._count('decode_errors')
            logger.warning(f"Parsing event: {e}")
            return None

        identity = self.identity_table.lookup(record.src_addr)
        if identity is None:
            self._count('dropped_unmonitored')
            return None

        observation = FlowObservation(
            pod_name=identity.name,
            namespace=identity.namespace,
            record=record,
        )
        self._count('observed')
        if record.blocked:
            self._count('blocked')

        self._emit(observation)
        return observation

    def _emit(self, observation: FlowObservation) -> None:
        flow_logger.info(observation.render(), extra={'extra_data': observation.to_dict()})
        for callback in self._callbacks:
            try:
                callback(observation)
            except Exception as e:
                self._count('callback_errors')
                logger.error(f"Observation callback error: {e}")

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def start(self) -> None:
        """Run the read loop in a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self.run,
            name="flow-event-pipeline",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the read loop to exit; True if it did."""
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)


__all__ = [
    'ACTION_ALLOWED',
    'ACTION_BLOCKED',
    'FlowObservation',
    'FlowEventPipeline',
]
