"""
Pod source backed by the Kubernetes API.

Lists the pods scheduled on this node that match the configured label
selector. This is the only module that imports the kubernetes client.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from .config import format_label_selector
from .constants import Defaults, NODE_FIELD_SELECTOR, PodPhase

logger = logging.getLogger(__name__)


class PodSourceError(Exception):
    """Raised when the cluster client cannot be built or a query fails."""
    pass


@dataclass(frozen=True)
class PodInfo:
    """The fields of a pod the control plane cares about."""
    name: str
    namespace: str
    phase: str
    pod_ip: str

    @property
    def is_running(self) -> bool:
        return self.phase == PodPhase.RUNNING

    @property
    def has_address(self) -> bool:
        return bool(self.pod_ip)

    @classmethod
    def from_v1_pod(cls, pod: Any) -> 'PodInfo':
        metadata = pod.metadata
        status = pod.status
        return cls(
            name=(metadata.name if metadata else None) or "",
            namespace=(metadata.namespace if metadata else None) or "",
            phase=(status.phase if status else None) or "",
            pod_ip=(status.pod_ip if status else None) or "",
        )


class PodSource:
    """
    Node-scoped pod listing.

    Usage:
        source = PodSource.from_cluster()
        pods = source.list_pods("node-1", {"monitor": "external"})
    """

    def __init__(self, core_api: Any, request_timeout: float = Defaults.API_REQUEST_TIMEOUT):
        self._core_api = core_api
        self.request_timeout = request_timeout

    @classmethod
    def from_cluster(
        cls,
        kubeconfig: Optional[str] = None,
        request_timeout: float = Defaults.API_REQUEST_TIMEOUT,
    ) -> 'PodSource':
        """
        Build a client from in-cluster config, or from a kubeconfig file.

        Raises:
            PodSourceError: If no usable configuration is found
        """
        try:
            if kubeconfig:
                config.load_kube_config(config_file=kubeconfig)
                logger.info(f"Using kubeconfig {kubeconfig}")
            else:
                config.load_incluster_config()
                logger.info("Using in-cluster Kubernetes configuration")
        except (ConfigException, OSError) as e:
            raise PodSourceError(f"Kubernetes client configuration failed: {e}") from e

        return cls(client.CoreV1Api(), request_timeout=request_timeout)

    def list_pods(self, node_name: str, selector: Mapping[str, str]) -> List[PodInfo]:
        """
        List pods on a node matching a label selector, in every namespace.

        Raises:
            PodSourceError: On API or transport failure
        """
        kwargs = {
            'field_selector': NODE_FIELD_SELECTOR.format(node=node_name),
            '_request_timeout': self.request_timeout,
        }
        if selector:
            kwargs['label_selector'] = format_label_selector(selector)

        try:
            response = self._core_api.list_pod_for_all_namespaces(**kwargs)
        except ApiException as e:
            raise PodSourceError(f"listing pods failed: {e.status} {e.reason}") from e
        except (HTTPError, OSError) as e:
            raise PodSourceError(f"listing pods failed: {e}") from e

        return [PodInfo.from_v1_pod(pod) for pod in (response.items or [])]


__all__ = [
    'PodSourceError',
    'PodInfo',
    'PodSource',
]
