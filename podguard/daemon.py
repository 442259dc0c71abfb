"""
PodGuard Daemon - wires the control plane together and owns its lifecycle.

Startup order:
1. Raise the memlock limit
2. Load the enforcement engine            (fatal on failure)
3. Attach to every veth                    (fatal if none attach)
4. Build the Kubernetes pod source         (fatal on failure)
5. Start the policy synchronizer
6. Open the event reader and start the flow pipeline

Shutdown reverses it: stop the synchronizer, close the reader (which ends
the pipeline's read loop), detach interfaces, unload the engine.
"""

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import psutil

from .attachment import AttachmentError, AttachmentManager
from .config import ConfigError, PodGuardConfig, load_config, parse_pod_selector
from .constants import Defaults, ExitCodes
from .ebpf.engine import EngineLoadError, EnforcementEngine, EventReader
from .identity import IdentityTable
from .kube import PodSource, PodSourceError
from .logging_config import configure_from_environment, get_logging_state, setup_logging
from .pipeline import FlowEventPipeline
from .synchronizer import PolicySynchronizer

logger = logging.getLogger(__name__)


class FatalStartupError(Exception):
    """Raised when the daemon cannot run at all."""
    pass


def raise_memlock_limit() -> bool:
    """Lift RLIMIT_MEMLOCK for BPF maps on kernels without memcg accounting."""
    try:
        psutil.Process().rlimit(
            psutil.RLIMIT_MEMLOCK,
            (psutil.RLIM_INFINITY, psutil.RLIM_INFINITY),
        )
        return True
    except (psutil.Error, OSError, ValueError) as e:
        logger.warning(f"Could not remove memlock limit: {e}")
        return False


class PodGuardDaemon:
    """
    Node-local pod network policy daemon.

    Usage:
        daemon = PodGuardDaemon(PodGuardConfig.from_environment())
        daemon.install_signal_handlers()
        daemon.start()
        daemon.wait()
        daemon.stop()
    """

    def __init__(
        self,
        config: PodGuardConfig,
        engine: Optional[EnforcementEngine] = None,
        pod_source_factory: Optional[Callable[[], Any]] = None,
        attachment_factory: Callable[[Any], AttachmentManager] = AttachmentManager,
    ):
        self.config = config
        self.engine = engine or EnforcementEngine(poll_timeout_ms=config.poll_timeout_ms)
        self._pod_source_factory = pod_source_factory or self._default_pod_source
        self._attachment_factory = attachment_factory

        self.identity_table = IdentityTable()
        self.attachments: Optional[AttachmentManager] = None
        self.synchronizer: Optional[PolicySynchronizer] = None
        self.pipeline: Optional[FlowEventPipeline] = None
        self.reader: Optional[EventReader] = None

        self._shutdown_event = threading.Event()
        self._running = False
        self._start_time: float = 0.0

    def _default_pod_source(self) -> PodSource:
        return PodSource.from_cluster(
            kubeconfig=self.config.kubeconfig,
            request_timeout=self.config.request_timeout,
        )

    def start(self) -> None:
        """
        Bring the control plane up.

        An interrupt partway through releases whatever was already set up
        before propagating.

        Raises:
            FatalStartupError: Engine load, attachment or cluster client failure
        """
        if self._running:
            return

        try:
            self._start_components()
        except KeyboardInterrupt:
            logger.warning("Startup interrupted, releasing partial setup")
            self._teardown()
            raise

        self._running = True
        self._start_time = time.time()

    def _start_components(self) -> None:
        logger.info("Starting PodGuard pod network monitor")
        raise_memlock_limit()

        try:
            self.engine.load()
        except EngineLoadError as e:
            raise FatalStartupError(f"Loading eBPF objects: {e}") from e

        self.attachments = self._attachment_factory(self.engine.classifier)
        try:
            self.attachments.attach_all()
        except AttachmentError as e:
            self.engine.close()
            raise FatalStartupError(str(e)) from e

        try:
            pod_source = self._pod_source_factory()
        except PodSourceError as e:
            self._teardown()
            raise FatalStartupError(f"Creating Kubernetes client: {e}") from e

        logger.info(f"Monitoring pods with labels: {self.config.pod_selector}")
        logger.info(f"Blocking mode: {self.config.block_external}")

        self.synchronizer = PolicySynchronizer(
            pod_source=pod_source,
            flag_table=self.engine.flag_table(),
            identity_table=self.identity_table,
            node_name=self.config.node_name,
            selector=self.config.pod_selector,
            block_external=self.config.block_external,
            interval=self.config.sync_interval,
        )
        self.synchronizer.start()

        try:
            self.reader = self.engine.open_event_reader()
        except EngineLoadError as e:
            self._teardown()
            raise FatalStartupError(f"Opening ringbuf reader: {e}") from e

        self.pipeline = FlowEventPipeline(self.reader, self.identity_table)
        self.pipeline.start()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested; True if it was."""
        return self._shutdown_event.wait(timeout)

    def stop(self) -> None:
        """Shut everything down. Safe to call more than once."""
        if not self._running:
            return
        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()
        self._teardown()

    def _teardown(self) -> None:
        if self.synchronizer is not None:
            self.synchronizer.stop()

        reader_stopped = True
        if self.reader is not None:
            self.reader.close()
        if self.pipeline is not None:
            reader_stopped = self.pipeline.join(timeout=Defaults.SHUTDOWN_TIMEOUT)

        if self.attachments is not None:
            self.attachments.release_all()

        # The pipeline thread may still be polling the ring buffer
        if not reader_stopped:
            logger.warning(
                "Flow pipeline did not stop within timeout, "
                "leaving engine cleanup to process exit"
            )
            return

        self.engine.close()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'uptime': time.time() - self._start_time if self._running else 0.0,
            'attached_interfaces': [
                h.ifname for h in self.attachments.handles
            ] if self.attachments else [],
            'identity_version': self.identity_table.version,
            'monitored_pods': len(self.identity_table),
            'synchronizer': self.synchronizer.get_stats() if self.synchronizer else None,
            'pipeline': self.pipeline.get_stats() if self.pipeline else None,
            'config': self.config.to_dict(),
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='podguard',
        description='PodGuard - node-local pod network policy daemon',
    )
    parser.add_argument('--config', type=str, default=None,
                        help='YAML config file (environment overrides it)')
    parser.add_argument('--node-name', type=str, default=None,
                        help='Node to scope the pod query to (default: $NODE_NAME or hostname)')
    parser.add_argument('--selector', type=str, default=None,
                        help='Label selector as k=v[,k=v] (default: $POD_SELECTOR or monitor=external)')
    block = parser.add_mutually_exclusive_group()
    block.add_argument('--block-external', dest='block_external', action='store_true',
                       default=None, help='Drop traffic from monitored pods')
    block.add_argument('--no-block-external', dest='block_external', action='store_false',
                       default=None, help='Monitor only, even if BLOCK_EXTERNAL is set')
    parser.add_argument('--sync-interval', type=float, default=None,
                        help=f'Seconds between synchronization cycles (default: {Defaults.SYNC_INTERVAL})')
    parser.add_argument('--kubeconfig', type=str, default=None,
                        help='Use a kubeconfig instead of in-cluster configuration')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose logging')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write logs to this file')
    parser.add_argument('--json-logs', action='store_true',
                        help='Emit logs as JSON lines')
    return parser


def apply_cli_overrides(config: PodGuardConfig, args: argparse.Namespace) -> PodGuardConfig:
    overrides = {}
    if args.node_name:
        overrides['node_name'] = args.node_name
    if args.selector is not None:
        overrides['pod_selector'] = parse_pod_selector(args.selector)
    if args.block_external is not None:
        overrides['block_external'] = args.block_external
    if args.sync_interval is not None:
        overrides['sync_interval'] = args.sync_interval
    if args.kubeconfig:
        overrides['kubeconfig'] = args.kubeconfig
    return replace(config, **overrides) if overrides else config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    configure_from_environment()
    if args.verbose or args.log_file or args.json_logs:
        state = get_logging_state()
        setup_logging(
            verbose=args.verbose or state['verbose'],
            log_file=args.log_file or state['log_file'],
            console=state['console_enabled'],
            json_format=args.json_logs or state['json_format'],
        )

    try:
        config = apply_cli_overrides(load_config(args.config), args)
        config.validate()
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return ExitCodes.CONFIG

    daemon = PodGuardDaemon(config)
    # Installed first so a signal during startup still reaches teardown
    daemon.install_signal_handlers()
    try:
        daemon.start()
    except FatalStartupError as e:
        logger.critical(str(e))
        return ExitCodes.FATAL
    except KeyboardInterrupt:
        logger.warning("Interrupted during startup")
        return ExitCodes.INTERRUPTED

    exit_code = ExitCodes.OK
    try:
        daemon.wait()
    except KeyboardInterrupt:
        exit_code = ExitCodes.INTERRUPTED
    finally:
        daemon.stop()

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
