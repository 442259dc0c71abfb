"""
Logging Configuration for PodGuard.

Provides centralized logging setup with a verbose toggle, per-component
feature areas and structured (text or JSON) output. Flow observations are
emitted on the ``podguard.flows`` logger with their fields attached as
``extra_data`` so JSON sinks receive them as structured records.

Usage:
    from podguard.logging_config import setup_logging, get_logger

    setup_logging(verbose=True)

    logger = get_logger('podguard.synchronizer')
    logger.log_with_data(logging.INFO, "Cycle complete", {'pods': 3})
"""

import os
import sys
import json
import logging
import threading
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass, field

from .constants import EnvKeys, TRUTHY_VALUES


# =============================================================================
# LEVELS AND FEATURE AREAS
# =============================================================================

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, 'TRACE')
logging.addLevelName(VERBOSE, 'VERBOSE')


class FeatureArea(Enum):
    """Component areas for targeted logging."""
    CORE = auto()           # Daemon lifecycle
    CONFIG = auto()         # Configuration loading
    ENGINE = auto()         # eBPF program, flag table, ring buffer
    ATTACHMENT = auto()     # TC attach/detach
    CLUSTER = auto()        # Kubernetes pod source
    SYNC = auto()           # Policy synchronizer
    FLOWS = auto()          # Flow event pipeline and observations


_FEATURE_MAP = {
    'flows': FeatureArea.FLOWS,
    'pipeline': FeatureArea.FLOWS,
    'synchronizer': FeatureArea.SYNC,
    'identity': FeatureArea.SYNC,
    'kube': FeatureArea.CLUSTER,
    'attachment': FeatureArea.ATTACHMENT,
    'ebpf': FeatureArea.ENGINE,
    'config': FeatureArea.CONFIG,
}


@dataclass
class LoggingState:
    """Logging configuration state."""
    verbose: bool = False
    trace: bool = False
    log_file: Optional[str] = None
    console_enabled: bool = True
    json_format: bool = False
    enabled_features: Set[FeatureArea] = field(default_factory=lambda: set(FeatureArea))
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


def _feature_for(name: str) -> FeatureArea:
    name_lower = name.lower()
    for key, feature in _FEATURE_MAP.items():
        if key in name_lower:
            return feature
    return FeatureArea.CORE


# =============================================================================
# FORMATTER
# =============================================================================

class PodGuardFormatter(logging.Formatter):
    """Formatter with color support and structured output."""

    COLORS = {
        'TRACE': '\033[90m',      # Gray
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}{level_name:8}{reset}"
        else:
            level_str = f"{level_name:8}"

        feature_str = f"[{_feature_for(record.name).name.lower()}]"
        msg = record.getMessage()

        extra_str = ""
        extra_data = getattr(record, 'extra_data', None)
        if extra_data and _state.verbose:
            extra_items = [f"{k}={v}" for k, v in extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        text = f"{timestamp} {level_str} {feature_str:12} {msg}{extra_str}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'feature': _feature_for(record.name).name.lower(),
            'message': record.getMessage(),
        }

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            data['extra'] = extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


# =============================================================================
# LOGGER CLASS
# =============================================================================

class PodGuardLogger(logging.Logger):
    """Logger with extra levels and structured data helpers."""

    def trace(self, msg: str, *args, **kwargs):
        """Log at TRACE level (ultra-verbose)."""
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    def verbose(self, msg: str, *args, **kwargs):
        """Log at VERBOSE level."""
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, msg, args, **kwargs)

    def log_with_data(self, level: int, msg: str, data: Dict[str, Any], **kwargs):
        """Log with structured extra data."""
        if not self.isEnabledFor(level):
            return
        extra = kwargs.pop('extra', {})
        extra['extra_data'] = data
        self._log(level, msg, (), extra=extra, **kwargs)


logging.setLoggerClass(PodGuardLogger)


# =============================================================================
# SETUP
# =============================================================================

def setup_logging(
    verbose: bool = False,
    trace: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable verbose logging (DEBUG level and extra fields)
        trace: Enable trace logging (TRACE level, implies verbose)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
        features: Feature areas logged at the base level; others are
            raised to WARNING
    """
    with _state._lock:
        _state.verbose = verbose or trace
        _state.trace = trace
        _state.log_file = log_file
        _state.console_enabled = console
        _state.json_format = json_format
        _state.enabled_features = set(features) if features is not None else set(FeatureArea)

        if trace:
            base_level = TRACE
        elif verbose:
            base_level = logging.DEBUG
        else:
            base_level = logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(PodGuardFormatter(
                use_colors=True,
                json_format=json_format,
            ))
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(base_level)
            file_handler.setFormatter(PodGuardFormatter(
                use_colors=False,
                json_format=json_format,
            ))
            root.addHandler(file_handler)

        for name, feature in _FEATURE_MAP.items():
            level = logging.NOTSET if feature in _state.enabled_features else logging.WARNING
            logging.getLogger(f"podguard.{name}").setLevel(level)

        _state.initialized = True


def get_logger(name: str) -> PodGuardLogger:
    """
    Get a PodGuard logger.

    Args:
        name: Logger name (e.g., 'podguard.flows')
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, PodGuardLogger):
        logging.setLoggerClass(PodGuardLogger)
        logger = logging.getLogger(name)
    return logger


def set_verbose(enabled: bool) -> None:
    """Toggle verbose mode at runtime."""
    with _state._lock:
        _state.verbose = enabled
        level = logging.DEBUG if enabled else logging.INFO

        root = logging.getLogger()
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _state.verbose


def get_logging_state() -> Dict[str, Any]:
    """Get current logging configuration state."""
    with _state._lock:
        return {
            'verbose': _state.verbose,
            'trace': _state.trace,
            'log_file': _state.log_file,
            'console_enabled': _state.console_enabled,
            'json_format': _state.json_format,
            'enabled_features': sorted(f.name for f in _state.enabled_features),
            'initialized': _state.initialized,
        }


def configure_from_environment(environ: Optional[Dict[str, str]] = None) -> None:
    """Configure logging from PODGUARD_* environment variables."""
    env = os.environ if environ is None else environ

    def flag(key: str) -> bool:
        return env.get(key, '').strip().lower() in TRUTHY_VALUES

    setup_logging(
        verbose=flag(EnvKeys.VERBOSE),
        trace=flag(EnvKeys.TRACE),
        log_file=env.get(EnvKeys.LOG_FILE) or None,
        console=not flag(EnvKeys.LOG_NO_CONSOLE),
        json_format=flag(EnvKeys.LOG_JSON),
    )


__all__ = [
    'TRACE',
    'VERBOSE',
    'FeatureArea',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
    'set_verbose',
    'is_verbose',
    'get_logging_state',
    'PodGuardLogger',
    'PodGuardFormatter',
]
