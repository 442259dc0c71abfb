"""
PodGuard - Node-Local Pod Network Policy Control Plane
"""

# Sets the logger class before any module asks for a logger
from . import logging_config

from .constants import Defaults, EnvKeys, ExitCodes, Protocols
from .config import ConfigError, PodGuardConfig, load_config, parse_pod_selector
from .addressing import ip_from_wire, table_key_from_ip
from .identity import IdentitySnapshot, IdentityTable, PodIdentity
from .kube import PodInfo, PodSource, PodSourceError
from .attachment import AttachmentError, AttachmentHandle, AttachmentManager
from .synchronizer import EnforcementEntry, PolicySynchronizer, SyncResult
from .pipeline import FlowEventPipeline, FlowObservation
from .daemon import FatalStartupError, PodGuardDaemon

__version__ = "1.0.0"

__all__ = [
    'Defaults',
    'EnvKeys',
    'ExitCodes',
    'Protocols',
    'ConfigError',
    'PodGuardConfig',
    'load_config',
    'parse_pod_selector',
    'ip_from_wire',
    'table_key_from_ip',
    'IdentitySnapshot',
    'IdentityTable',
    'PodIdentity',
    'PodInfo',
    'PodSource',
    'PodSourceError',
    'AttachmentError',
    'AttachmentHandle',
    'AttachmentManager',
    'EnforcementEntry',
    'PolicySynchronizer',
    'SyncResult',
    'FlowEventPipeline',
    'FlowObservation',
    'FatalStartupError',
    'PodGuardDaemon',
]
