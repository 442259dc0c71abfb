"""
Tests for the PodGuard daemon lifecycle and command line.

The enforcement engine, attachment manager and pod source are doubles;
see conftest.py.
"""

import os
import sys
import time
from unittest.mock import MagicMock, patch

import psutil
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from podguard.attachment import AttachmentError
from podguard.config import ConfigError
from podguard.constants import ExitCodes
from podguard.daemon import (
    FatalStartupError,
    PodGuardDaemon,
    apply_cli_overrides,
    build_parser,
    main,
    raise_memlock_limit,
)
from podguard.ebpf.engine import EngineLoadError
from podguard.kube import PodSourceError

from fakes import make_record


@pytest.fixture(autouse=True)
def no_rlimit():
    with patch('podguard.daemon.raise_memlock_limit') as mocked:
        yield mocked


@pytest.fixture
def attachments():
    manager = MagicMock()
    manager.attach_all.return_value = (1, [MagicMock(ifname="veth1a2b")])
    manager.handles = [MagicMock(ifname="veth1a2b")]
    return manager


@pytest.fixture
def daemon(config, fake_engine, pod_source, attachments):
    instance = PodGuardDaemon(
        config,
        engine=fake_engine,
        pod_source_factory=lambda: pod_source,
        attachment_factory=MagicMock(return_value=attachments),
    )
    yield instance
    instance.stop()


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while not predicate() and time.time() < deadline:
        time.sleep(0.01)
    return predicate()


# ===========================================================================
# Startup
# ===========================================================================

class TestStartup:
    """Tests for PodGuardDaemon.start."""

    def test_full_start(self, daemon, fake_engine, attachments, flag_table):
        daemon.start()

        assert daemon.is_running
        fake_engine.load.assert_called_once()
        daemon._attachment_factory.assert_called_once_with(fake_engine.classifier)
        attachments.attach_all.assert_called_once()
        assert wait_for(lambda: daemon.identity_table.version > 0)
        assert daemon.identity_table.lookup("10.0.0.5").name == "web-1"
        assert wait_for(lambda: len(flag_table.entries) == 2)

    def test_flows_reach_pipeline(self, daemon, event_reader):
        daemon.start()
        assert wait_for(lambda: daemon.identity_table.version > 0)

        event_reader.feed(make_record(src="10.0.0.5"))
        assert wait_for(lambda: daemon.pipeline.get_stats()['observed'] == 1)

    def test_engine_load_failure_is_fatal(self, config, fake_engine, attachments):
        fake_engine.load.side_effect = EngineLoadError("verifier rejected program")
        factory = MagicMock(return_value=attachments)
        daemon = PodGuardDaemon(config, engine=fake_engine, attachment_factory=factory)

        with pytest.raises(FatalStartupError) as exc_info:
            daemon.start()

        assert "Loading eBPF objects" in str(exc_info.value)
        factory.assert_not_called()

    def test_no_attachments_is_fatal(self, config, fake_engine, flag_table):
        """No veth attached: no cluster client, no synchronization."""
        manager = MagicMock()
        manager.attach_all.side_effect = AttachmentError(
            "No veth interfaces found or all attachments failed"
        )
        pod_source_factory = MagicMock()
        daemon = PodGuardDaemon(
            config,
            engine=fake_engine,
            pod_source_factory=pod_source_factory,
            attachment_factory=MagicMock(return_value=manager),
        )

        with pytest.raises(FatalStartupError):
            daemon.start()

        pod_source_factory.assert_not_called()
        fake_engine.close.assert_called_once()
        assert daemon.synchronizer is None
        assert flag_table.writes == []

    def test_cluster_client_failure_is_fatal(self, config, fake_engine, attachments):
        def broken_factory():
            raise PodSourceError("Kubernetes client configuration failed")

        daemon = PodGuardDaemon(
            config,
            engine=fake_engine,
            pod_source_factory=broken_factory,
            attachment_factory=MagicMock(return_value=attachments),
        )

        with pytest.raises(FatalStartupError) as exc_info:
            daemon.start()

        assert "Creating Kubernetes client" in str(exc_info.value)
        attachments.release_all.assert_called_once()
        fake_engine.close.assert_called_once()

    def test_reader_failure_is_fatal(self, daemon, fake_engine, attachments):
        fake_engine.open_event_reader.side_effect = EngineLoadError("no ringbuf")

        with pytest.raises(FatalStartupError):
            daemon.start()

        assert not daemon.synchronizer.is_running
        attachments.release_all.assert_called_once()

    def test_interrupt_during_startup_releases_attachments(self, config, fake_engine, attachments):
        """Ctrl-C while the cluster client is being built still detaches."""
        def interrupted_factory():
            raise KeyboardInterrupt

        daemon = PodGuardDaemon(
            config,
            engine=fake_engine,
            pod_source_factory=interrupted_factory,
            attachment_factory=MagicMock(return_value=attachments),
        )

        with pytest.raises(KeyboardInterrupt):
            daemon.start()

        assert not daemon.is_running
        attachments.release_all.assert_called_once()
        fake_engine.close.assert_called_once()


# ===========================================================================
# Shutdown
# ===========================================================================

class TestShutdown:
    """Tests for PodGuardDaemon.stop."""

    def test_stop_tears_down_in_order(self, daemon, fake_engine, attachments, event_reader):
        daemon.start()
        daemon.stop()

        assert not daemon.is_running
        assert not daemon.synchronizer.is_running
        assert not daemon.pipeline.is_running
        attachments.release_all.assert_called_once()
        fake_engine.close.assert_called_once()

    def test_stop_is_idempotent(self, daemon, fake_engine, attachments):
        daemon.start()
        daemon.stop()
        daemon.stop()
        attachments.release_all.assert_called_once()

    def test_stuck_pipeline_skips_engine_close(self, daemon, fake_engine, attachments):
        """The engine stays loaded while a reader thread may still poll it."""
        daemon.start()
        running_pipeline = daemon.pipeline
        daemon.pipeline = MagicMock()
        daemon.pipeline.join.return_value = False

        daemon.stop()

        attachments.release_all.assert_called_once()
        fake_engine.close.assert_not_called()
        assert running_pipeline.join(timeout=5)

    def test_request_shutdown_releases_wait(self, daemon):
        assert daemon.wait(timeout=0.01) is False
        daemon.request_shutdown()
        assert daemon.wait(timeout=0.01) is True

    def test_signal_handler_requests_shutdown(self, daemon):
        import signal
        daemon._signal_handler(signal.SIGTERM, None)
        assert daemon.wait(timeout=0.01) is True

    def test_stats(self, daemon):
        daemon.start()
        assert wait_for(lambda: daemon.identity_table.version > 0)
        stats = daemon.get_stats()
        assert stats['running'] is True
        assert stats['attached_interfaces'] == ["veth1a2b"]
        assert stats['monitored_pods'] == 2
        assert stats['config']['node_name'] == "node-1"


# ===========================================================================
# Memlock
# ===========================================================================

class TestMemlock:

    def test_failure_is_not_fatal(self):
        process = MagicMock()
        process.rlimit.side_effect = psutil.AccessDenied()
        with patch('podguard.daemon.psutil.Process', return_value=process):
            assert raise_memlock_limit() is False

    def test_success(self):
        process = MagicMock()
        with patch('podguard.daemon.psutil.Process', return_value=process):
            assert raise_memlock_limit() is True
        process.rlimit.assert_called_once()


# ===========================================================================
# Command line
# ===========================================================================

class TestCommandLine:
    """Tests for argument handling and main()."""

    def test_overrides(self, config):
        args = build_parser().parse_args([
            '--node-name', 'worker-9',
            '--selector', 'tier=edge',
            '--block-external',
            '--sync-interval', '2.5',
        ])
        updated = apply_cli_overrides(config, args)

        assert updated.node_name == "worker-9"
        assert updated.pod_selector == {"tier": "edge"}
        assert updated.block_external is True
        assert updated.sync_interval == 2.5
        assert config.node_name == "node-1"

    def test_no_overrides(self, config):
        args = build_parser().parse_args([])
        assert apply_cli_overrides(config, args) is config

    @patch('podguard.daemon.configure_from_environment')
    @patch('podguard.daemon.load_config')
    def test_main_config_error(self, load_config, _configure):
        load_config.side_effect = ConfigError("SYNC_INTERVAL must be a number")
        assert main([]) == ExitCodes.CONFIG

    @patch('podguard.daemon.configure_from_environment')
    @patch('podguard.daemon.PodGuardDaemon')
    @patch('podguard.daemon.load_config')
    def test_main_fatal_startup(self, load_config, daemon_cls, _configure, config):
        load_config.return_value = config
        daemon_cls.return_value.start.side_effect = FatalStartupError("Loading eBPF objects")

        assert main([]) == ExitCodes.FATAL
        daemon_cls.return_value.wait.assert_not_called()

    @patch('podguard.daemon.configure_from_environment')
    @patch('podguard.daemon.PodGuardDaemon')
    @patch('podguard.daemon.load_config')
    def test_main_clean_exit(self, load_config, daemon_cls, _configure, config):
        load_config.return_value = config

        assert main(['--node-name', 'worker-2']) == ExitCodes.OK

        started_with = daemon_cls.call_args.args[0]
        assert started_with.node_name == "worker-2"
        instance = daemon_cls.return_value
        instance.start.assert_called_once()
        instance.install_signal_handlers.assert_called_once()
        instance.stop.assert_called_once()

    def test_no_block_external_overrides_environment(self, config):
        config.block_external = True
        args = build_parser().parse_args(['--no-block-external'])
        assert apply_cli_overrides(config, args).block_external is False

    def test_block_flag_unset_by_default(self):
        assert build_parser().parse_args([]).block_external is None

    def test_block_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['--block-external', '--no-block-external'])

    @patch('podguard.daemon.configure_from_environment')
    @patch('podguard.daemon.PodGuardDaemon')
    @patch('podguard.daemon.load_config')
    def test_main_interrupted_startup(self, load_config, daemon_cls, _configure, config):
        load_config.return_value = config
        instance = daemon_cls.return_value
        instance.start.side_effect = KeyboardInterrupt

        assert main([]) == ExitCodes.INTERRUPTED

        calls = [c[0] for c in instance.mock_calls]
        assert calls.index('install_signal_handlers') < calls.index('start')
        instance.wait.assert_not_called()
