#!/usr/bin/env python3
"""
trackjoy-juggler daemon entry point.

Watches the device namespace and keeps one trackjoy process running for every
group of co-located keyboard and trackpad devices that satisfies the
configuration.

Exit codes: 0 after a signal-driven shutdown, 2 on configuration errors,
3 when the device namespace cannot be watched.
"""
import argparse
import logging
import signal
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from trackdevice.DeviceClassifier import DeviceClassifier
from trackdevice.DeviceModels import Requirement
from trackdevice.DeviceWatch import ADDED, DEFAULT_DEV_DIR, DeviceEvent
from trackdevice.WatchFactory import WATCH_DIRECTORY, WATCH_UDEV, create_device_watch
from trackjuggler.EventCoordinator import EventCoordinator
from trackjuggler.JugglerConfig import (
    JugglerConfig, load_requirement, UNCLASSIFIED_NON_MATCHING, UNCLASSIFIED_PENDING
)
from trackjuggler.JugglerEvents import CoordinatorEvent, EventType
from trackjuggler.LifecycleManager import LifecycleManager
from trackutils import logger
from trackutils.errors import ConfigError, WatchPrimitiveUnavailable

CoreLogger = logger.core_logger

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_WATCH_UNAVAILABLE = 3

WORKER_THREADS = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trackjoy-juggler",
        description="Launch one trackjoy process per plugged-in keyboard and trackpad group")
    parser.add_argument("config", help="trackjoy JSON configuration passed to every process")
    parser.add_argument("--dev-dir", default=DEFAULT_DEV_DIR,
                        help=f"device namespace directory (default: {DEFAULT_DEV_DIR})")
    parser.add_argument("--watch", choices=[WATCH_DIRECTORY, WATCH_UDEV], default=WATCH_DIRECTORY,
                        help="how to watch the namespace (default: directory)")
    parser.add_argument("--poll-interval", type=float, default=0.5,
                        help="directory scan interval in seconds")
    parser.add_argument("--executable", default="trackjoy",
                        help="managed process executable, looked up on PATH")
    parser.add_argument("--oracle", nargs="+", metavar="ARG",
                        help="classification oracle command, '{node}' is replaced by the device node")
    parser.add_argument("--oracle-timeout", type=float, default=5.0)
    parser.add_argument("--debounce", type=float, default=1.0,
                        help="seconds of quiet before groups are evaluated")
    parser.add_argument("--grace-period", type=float, default=3.0,
                        help="seconds between terminate and kill")
    parser.add_argument("--shutdown-deadline", type=float, default=5.0)
    parser.add_argument("--restart-on-crash", action="store_true",
                        help="recheck a group after its process crashes and the backoff expires")
    parser.add_argument("--crash-backoff", type=float, default=5.0)
    parser.add_argument("--no-bind-devices", dest="bind_devices", action="store_false",
                        help="pass --group KEY instead of the group's device nodes")
    parser.add_argument("--unclassified-policy", choices=[UNCLASSIFIED_PENDING, UNCLASSIFIED_NON_MATCHING],
                        default=UNCLASSIFIED_PENDING,
                        help="how to treat devices the oracle cannot classify")
    parser.add_argument("--keyboards", type=int, help="override the required keyboard count")
    parser.add_argument("--trackpads", type=int, help="override the required trackpad count")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--log-file", help="also write logs to this file")
    return parser


def build_config(args: argparse.Namespace) -> JugglerConfig:
    """
    Turn parsed arguments into a validated JugglerConfig

    Raises:
        ConfigError: If the configuration is unusable
    """
    requirement = None
    if args.keyboards is not None or args.trackpads is not None:
        # Counts not overridden still come from the trackjoy configuration
        base = load_requirement(args.config)
        keyboards = args.keyboards if args.keyboards is not None else base.min_keyboards
        trackpads = args.trackpads if args.trackpads is not None else base.min_trackpads
        try:
            requirement = Requirement(keyboards, trackpads)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    config = JugglerConfig(
        config_path=args.config,
        dev_dir=args.dev_dir.rstrip("/") or "/",
        watch=args.watch,
        poll_interval=args.poll_interval,
        executable=args.executable,
        oracle_command=args.oracle,
        oracle_timeout=args.oracle_timeout,
        debounce=args.debounce,
        grace_period=args.grace_period,
        shutdown_deadline=args.shutdown_deadline,
        restart_on_crash=args.restart_on_crash,
        crash_backoff=args.crash_backoff,
        bind_devices=args.bind_devices,
        unclassified_policy=args.unclassified_policy,
        requirement=requirement
    )
    config.validate()
    return config


class JugglerDaemon:
    """Wires the watch, coordinator and lifecycle manager together"""

    def __init__(self, config: JugglerConfig, watch=None, executor=None, popen=None):
        """
        Initialize the daemon

        Args:
            config: Validated configuration
            watch: Device watch, created from the configuration if None
            executor: Worker pool, a ThreadPoolExecutor if None
            popen: Process factory override for the lifecycle manager
        """
        self.config = config
        self.watch = watch
        self.executor = executor or ThreadPoolExecutor(max_workers=WORKER_THREADS,
                                                       thread_name_prefix="juggler-worker")

        self.classifier = DeviceClassifier(config.dev_dir, config.oracle_command, config.oracle_timeout)
        self.coordinator = EventCoordinator(
            config.resolve_requirement(),
            self.classifier,
            self.executor,
            debounce=config.debounce,
            unclassified_policy=config.unclassified_policy,
            shutdown_deadline=config.shutdown_deadline
        )
        lifecycle_options = {}
        if popen is not None:
            lifecycle_options['popen'] = popen
        self.lifecycle = LifecycleManager(
            config.config_path,
            self.coordinator.post,
            self.executor,
            executable=config.executable,
            dev_dir=config.dev_dir,
            grace_period=config.grace_period,
            bind_devices=config.bind_devices,
            restart_on_crash=config.restart_on_crash,
            crash_backoff=config.crash_backoff,
            **lifecycle_options
        )
        self.coordinator.attach_lifecycle(self.lifecycle)

    def on_device_event(self, event: DeviceEvent):
        """Watch callback; runs on the watch thread"""
        event_type = EventType.DEVICE_ADDED if event.action == ADDED else EventType.DEVICE_REMOVED
        self.coordinator.post(CoordinatorEvent(event_type, identifier=event.identifier))

    def start(self):
        """
        Acquire the device watch

        Raises:
            WatchPrimitiveUnavailable: If the namespace cannot be watched
        """
        if self.watch is None:
            self.watch = create_device_watch(self.config.watch, self.config.dev_dir, self.config.poll_interval)
        self.watch.add_callback(self.on_device_event)
        self.watch.start_monitoring()
        self.coordinator.attach_watch(self.watch)
        CoreLogger.info(f"Watching {self.config.dev_dir} ({self.config.watch}), "
                        f"requirement {self.coordinator.requirement!r}")
        CoreLogger.debug(f"Settings: {self.config.to_dict()}")

    def run(self):
        """Block in the coordinator loop until stop() is called"""
        self.coordinator.run()

    def stop(self):
        self.coordinator.stop()

    def install_signal_handlers(self):
        def handle_signal(signum, frame):
            CoreLogger.info(f"Received signal {signal.Signals(signum).name}")
            self.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the daemon

    Args:
        argv: Command line arguments, sys.argv[1:] if None

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logger.configure_all(level, args.log_file)

    try:
        config = build_config(args)
    except ConfigError as e:
        CoreLogger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    daemon = JugglerDaemon(config)
    try:
        daemon.start()
    except WatchPrimitiveUnavailable as e:
        CoreLogger.error(f"Cannot watch devices: {e}")
        daemon.executor.shutdown(wait=False)
        return EXIT_WATCH_UNAVAILABLE

    daemon.install_signal_handlers()
    daemon.run()
    return EXIT_OK


def main_entry():
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
