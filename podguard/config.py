"""
Configuration for PodGuard.

Values come from three layers, later layers winning:
1. An optional YAML file (``--config``)
2. Environment variables (POD_SELECTOR, BLOCK_EXTERNAL, NODE_NAME, ...)
3. Command line flags

Usage:
    config = PodGuardConfig.from_environment()
    config.validate()
"""

import logging
import math
import os
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .constants import Defaults, EnvKeys, TRUTHY_VALUES

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration is invalid."""
    pass


def parse_bool(value: Union[str, bool, int, None], default: bool = False) -> bool:
    """Interpret "true"/"1"/"yes"/"on" (any case) as True."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return default
    return text in TRUTHY_VALUES


def parse_pod_selector(value: Optional[str]) -> Dict[str, str]:
    """
    Parse a comma-separated ``key=value`` list into a label mapping.

    An unset or blank value yields the default selector. Pairs without an
    "=" are skipped. A value whose pairs are all malformed yields an empty
    selector, which matches every pod on the node.
    """
    if value is None or not value.strip():
        return dict(Defaults.pod_selector)

    selector: Dict[str, str] = {}
    for pair in value.split(','):
        key, sep, val = pair.partition('=')
        key = key.strip()
        if not sep or not key:
            if pair.strip():
                logger.warning(f"Ignoring malformed selector pair: {pair!r}")
            continue
        selector[key] = val.strip()
    return selector


def format_label_selector(selector: Mapping[str, str]) -> str:
    """Render a selector in the API server's ``k=v,k2=v2`` form, sorted by key."""
    return ','.join(f"{key}={selector[key]}" for key in sorted(selector))


def default_node_name() -> str:
    return socket.gethostname()


@dataclass
class PodGuardConfig:
    """Runtime configuration."""
    pod_selector: Dict[str, str] = field(default_factory=lambda: dict(Defaults.pod_selector))
    block_external: bool = False
    node_name: str = field(default_factory=default_node_name)
    sync_interval: float = Defaults.SYNC_INTERVAL
    kubeconfig: Optional[str] = None
    request_timeout: float = Defaults.API_REQUEST_TIMEOUT
    poll_timeout_ms: int = Defaults.POLL_TIMEOUT_MS

    @classmethod
    def from_environment(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional['PodGuardConfig'] = None,
    ) -> 'PodGuardConfig':
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            base: Config whose values are kept for unset variables
        """
        env = os.environ if environ is None else environ
        config = replace(base) if base is not None else cls()

        if EnvKeys.POD_SELECTOR in env:
            config.pod_selector = parse_pod_selector(env[EnvKeys.POD_SELECTOR])

        if EnvKeys.BLOCK_EXTERNAL in env:
            config.block_external = parse_bool(env[EnvKeys.BLOCK_EXTERNAL])

        node_name = env.get(EnvKeys.NODE_NAME, '').strip()
        if node_name:
            config.node_name = node_name

        interval = env.get(EnvKeys.SYNC_INTERVAL, '').strip()
        if interval:
            try:
                config.sync_interval = float(interval)
            except ValueError:
                raise ConfigError(f"{EnvKeys.SYNC_INTERVAL} must be a number, got {interval!r}")

        kubeconfig = env.get(EnvKeys.KUBECONFIG, '').strip()
        if kubeconfig:
            config.kubeconfig = kubeconfig

        return config

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'PodGuardConfig':
        """
        Load a YAML config file.

        Recognized keys: pod_selector (mapping or "k=v,..." string),
        block_external, node_name, sync_interval, kubeconfig,
        request_timeout.
        """
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PodGuardConfig':
        config = cls()

        selector = data.get('pod_selector')
        if isinstance(selector, dict):
            config.pod_selector = {str(k): str(v) for k, v in selector.items()}
        elif isinstance(selector, str):
            config.pod_selector = parse_pod_selector(selector)
        elif selector is not None:
            raise ConfigError("pod_selector must be a mapping or a 'k=v,...' string")

        if 'block_external' in data:
            config.block_external = parse_bool(data['block_external'])
        if data.get('node_name'):
            config.node_name = str(data['node_name'])
        if data.get('kubeconfig'):
            config.kubeconfig = str(data['kubeconfig'])

        for key in ('sync_interval', 'request_timeout'):
            if key in data:
                try:
                    setattr(config, key, float(data[key]))
                except (TypeError, ValueError):
                    raise ConfigError(f"{key} must be a number, got {data[key]!r}")

        unknown = set(data) - {
            'pod_selector', 'block_external', 'node_name',
            'sync_interval', 'kubeconfig', 'request_timeout',
        }
        for key in sorted(unknown):
            logger.warning(f"Ignoring unknown config key: {key}")

        return config

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be run."""
        # NaN fails every comparison, so finiteness is checked first
        if not math.isfinite(self.sync_interval) or self.sync_interval < Defaults.MIN_SYNC_INTERVAL:
            raise ConfigError(
                f"sync_interval must be a finite number >= {Defaults.MIN_SYNC_INTERVAL}s, "
                f"got {self.sync_interval}"
            )
        if not math.isfinite(self.request_timeout) or self.request_timeout <= 0:
            raise ConfigError(
                f"request_timeout must be a finite positive number, got {self.request_timeout}"
            )
        if not self.node_name:
            raise ConfigError("node_name is empty and the hostname could not be determined")
        for key in self.pod_selector:
            if not key:
                raise ConfigError("pod_selector contains an empty label key")

    @property
    def label_selector(self) -> str:
        return format_label_selector(self.pod_selector)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pod_selector': dict(self.pod_selector),
            'block_external': self.block_external,
            'node_name': self.node_name,
            'sync_interval': self.sync_interval,
            'kubeconfig': self.kubeconfig,
            'request_timeout': self.request_timeout,
        }


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PodGuardConfig:
    """File (if any), then environment; validated."""
    base = PodGuardConfig.from_file(path) if path else None
    config = PodGuardConfig.from_environment(environ, base=base)
    config.validate()
    return config


__all__ = [
    'ConfigError',
    'PodGuardConfig',
    'parse_bool',
    'parse_pod_selector',
    'format_label_selector',
    'default_node_name',
    'load_config',
]
