"""
Centralized Constants Module for PodGuard.

Consolidates defaults, wire sizes and protocol numbers used across the
control plane so the synchronizer, the flow pipeline and the eBPF program
agree on a single set of values.

Usage:
    from podguard.constants import Defaults, Protocols

    interval = Defaults.SYNC_INTERVAL
"""

from dataclasses import dataclass
from typing import Dict


# =============================================================================
# DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class _Defaults:
    """Default runtime configuration values."""
    # Label selector applied when POD_SELECTOR is unset or empty
    POD_SELECTOR_KEY: str = "monitor"
    POD_SELECTOR_VALUE: str = "external"

    # Policy synchronizer period (seconds)
    SYNC_INTERVAL: float = 10.0
    MIN_SYNC_INTERVAL: float = 1.0

    # Kubernetes API request timeout (seconds)
    API_REQUEST_TIMEOUT: float = 10.0

    # Ring buffer poll timeout (milliseconds)
    POLL_TIMEOUT_MS: int = 100

    # Thread join timeout on shutdown (seconds)
    SHUTDOWN_TIMEOUT: float = 5.0

    @property
    def pod_selector(self) -> Dict[str, str]:
        return {self.POD_SELECTOR_KEY: self.POD_SELECTOR_VALUE}


Defaults = _Defaults()


# =============================================================================
# ENVIRONMENT KEYS
# =============================================================================

class EnvKeys:
    """Recognized environment variables."""
    POD_SELECTOR = "POD_SELECTOR"
    BLOCK_EXTERNAL = "BLOCK_EXTERNAL"
    NODE_NAME = "NODE_NAME"
    SYNC_INTERVAL = "SYNC_INTERVAL"
    KUBECONFIG = "KUBECONFIG"

    # Logging
    VERBOSE = "PODGUARD_VERBOSE"
    TRACE = "PODGUARD_TRACE"
    LOG_FILE = "PODGUARD_LOG_FILE"
    LOG_JSON = "PODGUARD_LOG_JSON"
    LOG_NO_CONSOLE = "PODGUARD_LOG_NO_CONSOLE"


TRUTHY_VALUES = ('1', 'true', 'yes', 'on')


# =============================================================================
# ENFORCEMENT ENGINE LAYOUT
# =============================================================================

class EngineLayout:
    """Sizes and names shared with the in-kernel classifier."""
    FLAG_TABLE_NAME = "blocked_pods"
    EVENTS_NAME = "events"
    CLASSIFIER_NAME = "monitor_egress"

    FLAG_TABLE_MAX_ENTRIES = 1024
    # 64 pages of 4 KiB = 256 KiB
    RINGBUF_PAGES = 64

    # srcAddr, dstAddr, srcPort, dstPort, protocol, blocked,
    # foundInTable, flagValue, lookupAddr
    FLOW_RECORD_SIZE = 20


class TcParents:
    """clsact parent handles."""
    INGRESS = "ffff:fff2"
    EGRESS = "ffff:fff3"


# =============================================================================
# PROTOCOLS
# =============================================================================

class Protocols:
    """IP protocol numbers the flow pipeline names."""
    ICMP = 1
    TCP = 6
    UDP = 17

    NAMES: Dict[int, str] = {
        1: "ICMP",
        6: "TCP",
        17: "UDP",
    }


# =============================================================================
# KUBERNETES
# =============================================================================

class PodPhase:
    """Pod phases reported by the API server."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


NODE_FIELD_SELECTOR = "spec.nodeName={node}"


# =============================================================================
# EXIT CODES
# =============================================================================

class ExitCodes:
    """Process exit status."""
    OK = 0
    FATAL = 1
    CONFIG = 2
    INTERRUPTED = 130


__all__ = [
    'Defaults',
    'EnvKeys',
    'TRUTHY_VALUES',
    'EngineLayout',
    'TcParents',
    'Protocols',
    'PodPhase',
    'NODE_FIELD_SELECTOR',
    'ExitCodes',
]
