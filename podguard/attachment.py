"""
Attachment Manager - wires the classifier onto host-side veth interfaces.

Each veth gets a clsact qdisc and a direct-action BPF filter on its ingress
hook, which is where traffic leaving the pod enters the host. Interfaces
created after startup are not picked up.

When a clsact qdisc is already present, filters carrying the classifier's
name are treated as leftovers from a run that did not detach and are
deleted before the new filter goes on.
"""

import errno
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from .constants import TcParents

logger = logging.getLogger(__name__)

VETH_KIND = "veth"
FILTER_HANDLE = ":1"


class AttachmentError(Exception):
    """Raised when no interface could be attached."""
    pass


@dataclass
class AttachmentHandle:
    """One interface the classifier is attached to."""
    ifindex: int
    ifname: str
    # False when the clsact qdisc already existed before we attached
    created_qdisc: bool = True


@dataclass(frozen=True)
class Interface:
    index: int
    name: str
    kind: Optional[str]


def link_kind(link: Any) -> Optional[str]:
    """IFLA_INFO_KIND of a netlink link message, if present."""
    linkinfo = link.get_attr('IFLA_LINKINFO')
    if linkinfo is None:
        return None
    return linkinfo.get_attr('IFLA_INFO_KIND')


def parse_tc_handle(handle: str) -> int:
    """'ffff:fff2' -> 0xFFFFFFF2."""
    major, _, minor = handle.partition(':')
    return (int(major or '0', 16) << 16) | int(minor or '0', 16)


def filter_name(name: Any) -> str:
    if isinstance(name, bytes):
        return name.decode(errors='replace')
    return name or ""


class AttachmentManager:
    """
    Attaches the classifier to every veth and detaches it on shutdown.

    Usage:
        manager = AttachmentManager(engine.classifier)
        count, handles = manager.attach_all()
        ...
        manager.release_all()
    """

    def __init__(
        self,
        classifier: Any,
        ipr_factory: Callable[[], Any] = IPRoute,
        parent: str = TcParents.INGRESS,
    ):
        self.classifier = classifier
        self.parent = parent
        self._ipr_factory = ipr_factory
        self._ipr = None
        self._handles: List[AttachmentHandle] = []

    @property
    def handles(self) -> List[AttachmentHandle]:
        return list(self._handles)

    def _route(self) -> Any:
        if self._ipr is None:
            self._ipr = self._ipr_factory()
        return self._ipr

    def list_interfaces(self) -> List[Interface]:
        interfaces = []
        for link in self._route().get_links():
            interfaces.append(Interface(
                index=link['index'],
                name=link.get_attr('IFLA_IFNAME') or str(link['index']),
                kind=link_kind(link),
            ))
        return interfaces

    def attach_all(self) -> Tuple[int, List[AttachmentHandle]]:
        """
        Attach to every veth present now.

        Returns:
            (count, handles) for the interfaces that attached

        Raises:
            AttachmentError: If nothing attached
        """
        for iface in self.list_interfaces():
            if iface.kind != VETH_KIND:
                continue
            try:
                handle = self.attach(iface)
            except (NetlinkError, OSError) as e:
                logger.warning(f"Could not attach to {iface.name}: {e}")
                continue
            self._handles.append(handle)
            logger.info(f"Attached to veth: {iface.name}")

        if not self._handles:
            self.close()
            raise AttachmentError("No veth interfaces found or all attachments failed")

        logger.info(f"Successfully attached to {len(self._handles)} veth interface(s)")
        return len(self._handles), self.handles

    def attach(self, iface: Interface) -> AttachmentHandle:
        ipr = self._route()
        created_qdisc = True
        try:
            ipr.tc("add", "clsact", iface.index)
        except NetlinkError as e:
            if e.code != errno.EEXIST:
                raise
            created_qdisc = False
            try:
                self.remove_stale_filters(iface)
            except (NetlinkError, OSError) as scan_error:
                logger.warning(f"Could not check {iface.name} for stale filters: {scan_error}")

        try:
            ipr.tc(
                "add-filter", "bpf", iface.index, FILTER_HANDLE,
                fd=self.classifier.fd,
                name=self.classifier.name,
                parent=self.parent,
                classid=1,
                direct_action=True,
            )
        except (NetlinkError, OSError):
            if created_qdisc:
                self._delete_qdisc(iface.index, iface.name)
            raise

        return AttachmentHandle(
            ifindex=iface.index,
            ifname=iface.name,
            created_qdisc=created_qdisc,
        )

    def remove_stale_filters(self, iface: Interface) -> int:
        """
        Delete classifier filters left on an existing clsact by an earlier run.

        Only bpf filters carrying our classifier's name are removed; other
        tenants of the qdisc are left alone.

        Returns:
            Number of filters deleted
        """
        ipr = self._route()
        ours = filter_name(self.classifier.name)
        removed = 0
        for msg in ipr.get_filters(index=iface.index, parent=parse_tc_handle(self.parent)):
            if msg.get_attr('TCA_KIND') != 'bpf':
                continue
            options = msg.get_attr('TCA_OPTIONS')
            if options is None or filter_name(options.get_attr('TCA_BPF_NAME')) != ours:
                continue
            ipr.tc(
                "del-filter", "bpf", iface.index, FILTER_HANDLE,
                parent=self.parent,
                prio=msg['info'] >> 16,
            )
            removed += 1

        if removed:
            logger.warning(f"Removed {removed} stale classifier filter(s) from {iface.name}")
        return removed

    def release(self, handle: AttachmentHandle) -> bool:
        """Detach one interface. Failures are logged, not retried."""
        ipr = self._route()
        try:
            if handle.created_qdisc:
                ipr.tc("del", "clsact", handle.ifindex)
            else:
                ipr.tc("del-filter", "bpf", handle.ifindex, FILTER_HANDLE, parent=self.parent)
        except (NetlinkError, OSError) as e:
            logger.warning(f"Could not detach from {handle.ifname}: {e}")
            return False
        logger.debug(f"Detached from {handle.ifname}")
        return True

    def release_all(self) -> int:
        """Detach every handle; returns how many detached cleanly."""
        released = 0
        handles, self._handles = self._handles, []
        for handle in handles:
            if self.release(handle):
                released += 1
        if handles:
            logger.info(f"Detached from {released}/{len(handles)} interface(s)")
        self.close()
        return released

    def close(self) -> None:
        if self._ipr is not None:
            try:
                self._ipr.close()
            except (NetlinkError, OSError) as e:
                logger.debug(f"Closing netlink socket: {e}")
            self._ipr = None

    def _delete_qdisc(self, ifindex: int, ifname: str) -> None:
        try:
            self._route().tc("del", "clsact", ifindex)
        except (NetlinkError, OSError) as e:
            logger.debug(f"Rolling back clsact on {ifname}: {e}")


__all__ = [
    'AttachmentError',
    'AttachmentHandle',
    'AttachmentManager',
    'Interface',
    'link_kind',
    'parse_tc_handle',
]
