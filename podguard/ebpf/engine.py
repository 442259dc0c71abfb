"""
Enforcement Engine - userspace handle on the in-kernel TC classifier.

Exposes the three seams the control plane uses:
- the loaded classifier function (fd + name) for the attachment manager
- the flag table, written by the policy synchronizer
- the flow record ring buffer, read by the flow pipeline

Requires BCC (python3-bpfcc) and CAP_BPF/CAP_NET_ADMIN.
"""

import ctypes as ct
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from enum import IntEnum
from typing import Any, Deque, Optional

from ..constants import Defaults, EngineLayout
from .program import CFLAGS, render_program

logger = logging.getLogger(__name__)

BCC_AVAILABLE = False

try:
    from bcc import BPF
    BCC_AVAILABLE = True
except ImportError:
    BPF = None
    logger.info("BCC not available - enforcement engine cannot be loaded")


class EnforcementFlag(IntEnum):
    """Per-address enforcement mode stored in the flag table."""
    MONITOR = 0
    BLOCK = 1

    @classmethod
    def for_block_mode(cls, block_external: bool) -> 'EnforcementFlag':
        return cls.BLOCK if block_external else cls.MONITOR


class EngineLoadError(Exception):
    """Raised when the classifier cannot be compiled or loaded."""
    pass


class TableWriteError(Exception):
    """Raised when a flag table upsert fails."""
    pass


class StreamClosedError(Exception):
    """Raised by EventReader.read() once the reader has been closed."""
    pass


class FlagTable(ABC):
    """Writable address -> flag table (upsert only)."""

    @abstractmethod
    def put(self, key: int, flag: EnforcementFlag) -> None:
        """Upsert the flag for a table key. Raises TableWriteError."""
        pass


class EventReader(ABC):
    """Blocking source of raw flow records."""

    @abstractmethod
    def read(self) -> bytes:
        """
        Block until the next raw record is available.

        Raises:
            StreamClosedError: Once close() has been called
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the reader; a blocked read() returns StreamClosedError."""
        pass


class BccFlagTable(FlagTable):
    """Flag table backed by the classifier's BPF_HASH."""

    def __init__(self, bpf: Any, name: str = EngineLayout.FLAG_TABLE_NAME):
        self._table = bpf[name]

    def put(self, key: int, flag: EnforcementFlag) -> None:
        try:
            self._table[self._table.Key(key)] = self._table.Leaf(int(flag))
        except Exception as e:
            raise TableWriteError(f"upsert 0x{key:08x} -> {int(flag)} failed: {e}") from e


class RingBufferReader(EventReader):
    """
    Reader over the classifier's BPF ring buffer.

    BCC delivers records through a callback during ring_buffer_poll(); the
    callback queues the raw bytes and read() hands them out one at a time.
    Polling uses a short timeout so a close() from another thread is
    noticed promptly.
    """

    def __init__(
        self,
        bpf: Any,
        name: str = EngineLayout.EVENTS_NAME,
        poll_timeout_ms: int = Defaults.POLL_TIMEOUT_MS,
    ):
        self._bpf = bpf
        self._poll_timeout_ms = poll_timeout_ms
        self._pending: Deque[bytes] = deque()
        self._closed = threading.Event()
        bpf[name].open_ring_buffer(self._on_record)

    def _on_record(self, ctx, data, size) -> int:
        self._pending.append(ct.string_at(data, size))
        return 0

    def read(self) -> bytes:
        while True:
            if self._closed.is_set():
                raise StreamClosedError("ring buffer reader closed")
            if self._pending:
                return self._pending.popleft()
            self._bpf.ring_buffer_poll(self._poll_timeout_ms)

    def close(self) -> None:
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


class EnforcementEngine:
    """
    Loads the classifier and hands out its table and ring buffer.

    Usage:
        engine = EnforcementEngine()
        engine.load()
        table = engine.flag_table()
        reader = engine.open_event_reader()
        ...
        engine.close()
    """

    def __init__(self, poll_timeout_ms: int = Defaults.POLL_TIMEOUT_MS):
        self.poll_timeout_ms = poll_timeout_ms
        self._bpf = None
        self._classifier = None

    @property
    def is_loaded(self) -> bool:
        return self._bpf is not None

    def load(self) -> None:
        """
        Compile and load the classifier.

        Raises:
            EngineLoadError: BCC missing, compile failure or verifier rejection
        """
        if self._bpf is not None:
            return
        if not BCC_AVAILABLE:
            raise EngineLoadError("BCC is not installed (python3-bpfcc)")

        try:
            bpf = BPF(text=render_program(), cflags=CFLAGS)
            classifier = bpf.load_func(EngineLayout.CLASSIFIER_NAME, BPF.SCHED_CLS)
        except Exception as e:
            raise EngineLoadError(f"loading classifier failed: {e}") from e

        self._bpf = bpf
        self._classifier = classifier
        logger.info(f"Loaded classifier {EngineLayout.CLASSIFIER_NAME} (fd={classifier.fd})")

    @property
    def classifier(self) -> Any:
        """Loaded function object with .fd and .name."""
        self._require_loaded()
        return self._classifier

    def flag_table(self) -> FlagTable:
        self._require_loaded()
        return BccFlagTable(self._bpf)

    def open_event_reader(self) -> RingBufferReader:
        self._require_loaded()
        try:
            return RingBufferReader(self._bpf, poll_timeout_ms=self.poll_timeout_ms)
        except Exception as e:
            raise EngineLoadError(f"opening ring buffer reader failed: {e}") from e

    def close(self) -> None:
        """Release the program and its maps."""
        if self._bpf is None:
            return
        try:
            self._bpf.cleanup()
        except Exception as e:
            logger.warning(f"Engine cleanup failed: {e}")
        self._bpf = None
        self._classifier = None
        logger.info("Enforcement engine unloaded")

    def _require_loaded(self) -> None:
        if self._bpf is None:
            raise EngineLoadError("enforcement engine is not loaded")


__all__ = [
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
]
