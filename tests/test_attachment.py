"""
Tests for the Attachment Manager.

Netlink is replaced by a MagicMock IPRoute; links are mocks answering
get_attr() and item access like pyroute2 link messages.
"""

import errno
import os
import sys
from unittest.mock import MagicMock, call

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyroute2.netlink.exceptions import NetlinkError

from podguard.attachment import (
    AttachmentError,
    AttachmentHandle,
    AttachmentManager,
    Interface,
    link_kind,
    parse_tc_handle,
)
from podguard.constants import TcParents


def make_link(index, name, kind=None):
    """Mock netlink link message."""
    linkinfo = None
    if kind is not None:
        linkinfo = MagicMock()
        linkinfo.get_attr.side_effect = lambda attr: kind if attr == 'IFLA_INFO_KIND' else None

    attrs = {'IFLA_IFNAME': name, 'IFLA_LINKINFO': linkinfo}
    link = MagicMock()
    link.get_attr.side_effect = lambda attr: attrs.get(attr)
    link.__getitem__.side_effect = lambda key: {'index': index}[key]
    return link


@pytest.fixture
def classifier():
    fn = MagicMock(fd=42)
    fn.name = "monitor_egress"
    return fn


@pytest.fixture
def ipr():
    route = MagicMock()
    route.get_links.return_value = [
        make_link(1, "lo"),
        make_link(2, "eth0", kind=None),
        make_link(7, "veth1a2b", kind="veth"),
        make_link(9, "vethc3d4", kind="veth"),
        make_link(11, "cni0", kind="bridge"),
    ]
    return route


@pytest.fixture
def manager(classifier, ipr):
    return AttachmentManager(classifier, ipr_factory=lambda: ipr)


def make_filter(name, kind="bpf", prio=49152):
    """Mock tc filter message as returned by get_filters()."""
    options = MagicMock()
    options.get_attr.side_effect = lambda attr: name if attr == 'TCA_BPF_NAME' else None
    attrs = {'TCA_KIND': kind, 'TCA_OPTIONS': options}
    msg = MagicMock()
    msg.get_attr.side_effect = lambda attr: attrs.get(attr)
    msg.__getitem__.side_effect = lambda key: {'info': (prio << 16) | 0x0300}[key]
    return msg


def filter_calls(ipr):
    return [c for c in ipr.tc.call_args_list if c.args[0] == "add-filter"]


class TestLinkKind:

    def test_veth(self):
        assert link_kind(make_link(3, "veth0", kind="veth")) == "veth"

    def test_no_linkinfo(self):
        assert link_kind(make_link(1, "lo")) is None


class TestAttachAll:
    """Tests for AttachmentManager.attach_all."""

    def test_only_veth_interfaces(self, manager, ipr):
        count, handles = manager.attach_all()

        assert count == 2
        assert [h.ifname for h in handles] == ["veth1a2b", "vethc3d4"]
        assert [c.args[2] for c in filter_calls(ipr)] == [7, 9]

    def test_filter_arguments(self, manager, ipr):
        manager.attach_all()
        first = filter_calls(ipr)[0]
        assert first == call(
            "add-filter", "bpf", 7, ":1",
            fd=42,
            name="monitor_egress",
            parent=TcParents.INGRESS,
            classid=1,
            direct_action=True,
        )
        ipr.tc.assert_any_call("add", "clsact", 7)

    def test_failed_interface_skipped(self, manager, ipr):
        def tc(*args, **kwargs):
            if args[0] == "add-filter" and args[2] == 7:
                raise NetlinkError(errno.EPERM, "Operation not permitted")

        ipr.tc.side_effect = tc
        count, handles = manager.attach_all()

        assert count == 1
        assert handles[0].ifname == "vethc3d4"
        # qdisc created for the failed interface is rolled back
        ipr.tc.assert_any_call("del", "clsact", 7)

    def test_existing_qdisc_reused(self, manager, ipr):
        def tc(*args, **kwargs):
            if args[:2] == ("add", "clsact"):
                raise NetlinkError(errno.EEXIST, "File exists")

        ipr.tc.side_effect = tc
        _, handles = manager.attach_all()

        assert all(h.created_qdisc is False for h in handles)
        assert len(filter_calls(ipr)) == 2

    def test_no_veth_raises(self, classifier):
        route = MagicMock()
        route.get_links.return_value = [make_link(1, "lo"), make_link(2, "eth0")]
        manager = AttachmentManager(classifier, ipr_factory=lambda: route)

        with pytest.raises(AttachmentError):
            manager.attach_all()
        route.close.assert_called_once()

    def test_all_failures_raise(self, manager, ipr):
        ipr.tc.side_effect = NetlinkError(errno.EPERM, "Operation not permitted")
        with pytest.raises(AttachmentError):
            manager.attach_all()
        assert manager.handles == []


class TestRelease:
    """Tests for detaching."""

    def test_release_all_deletes_created_qdiscs(self, manager, ipr):
        manager.attach_all()
        ipr.tc.reset_mock()

        assert manager.release_all() == 2
        assert ipr.tc.call_args_list == [
            call("del", "clsact", 7),
            call("del", "clsact", 9),
        ]
        assert manager.handles == []
        ipr.close.assert_called_once()

    def test_release_preexisting_qdisc_removes_filter_only(self, manager, ipr):
        handle = AttachmentHandle(ifindex=7, ifname="veth1a2b", created_qdisc=False)
        assert manager.release(handle) is True
        ipr.tc.assert_called_once_with("del-filter", "bpf", 7, ":1", parent=TcParents.INGRESS)

    def test_release_failure_logged(self, manager, ipr, caplog):
        manager.attach_all()
        ipr.tc.side_effect = NetlinkError(errno.ENODEV, "No such device")

        assert manager.release_all() == 0
        assert "Could not detach" in caplog.text

    def test_release_all_without_handles(self, manager):
        assert manager.release_all() == 0


class TestStaleFilters:
    """Filters left behind by a run that never reached teardown."""

    @staticmethod
    def existing_qdisc(*args, **kwargs):
        if args[:2] == ("add", "clsact"):
            raise NetlinkError(errno.EEXIST, "File exists")

    def test_parse_tc_handle(self):
        assert parse_tc_handle(TcParents.INGRESS) == 0xFFFFFFF2
        assert parse_tc_handle(":1") == 1

    def test_leftover_filter_removed_before_attach(self, manager, ipr):
        ipr.tc.side_effect = self.existing_qdisc
        ipr.get_filters.return_value = [make_filter(b"monitor_egress", prio=49152)]

        manager.attach(Interface(7, "veth1a2b", "veth"))

        ipr.get_filters.assert_called_once_with(index=7, parent=0xFFFFFFF2)
        actions = [c.args[0] for c in ipr.tc.call_args_list]
        assert actions == ["add", "del-filter", "add-filter"]
        ipr.tc.assert_any_call(
            "del-filter", "bpf", 7, ":1", parent=TcParents.INGRESS, prio=49152,
        )

    def test_foreign_filters_kept(self, manager, ipr):
        ipr.tc.side_effect = self.existing_qdisc
        ipr.get_filters.return_value = [
            make_filter("cilium_xyz"),
            make_filter(None, kind="u32"),
        ]

        assert manager.remove_stale_filters(Interface(7, "veth1a2b", "veth")) == 0
        assert not [c for c in ipr.tc.call_args_list if c.args[0] == "del-filter"]

    def test_fresh_qdisc_not_scanned(self, manager, ipr):
        manager.attach(Interface(7, "veth1a2b", "veth"))
        ipr.get_filters.assert_not_called()

    def test_scan_failure_does_not_block_attach(self, manager, ipr, caplog):
        ipr.tc.side_effect = self.existing_qdisc
        ipr.get_filters.side_effect = NetlinkError(errno.EPERM, "Operation not permitted")

        handle = manager.attach(Interface(7, "veth1a2b", "veth"))

        assert handle.created_qdisc is False
        assert len(filter_calls(ipr)) == 1
        assert "stale filters" in caplog.text
