"""
Device namespace watches.

A watch turns a device namespace into an ordered stream of DeviceEvents. On
start it re-enumerates every existing entry as an ADDED event so the consumer
can seed its state, then reports changes as they happen.
"""
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import pyudev

from trackdevice.DeviceModels import DeviceSnapshot
from trackutils import logger
from trackutils.errors import WatchPrimitiveUnavailable

DeviceLogger = logger.device_logger

ADDED = "added"
REMOVED = "removed"

DEFAULT_DEV_DIR = "/dev/input/by-path"


class DeviceEvent:
    """An added/removed notification for one namespace entry"""

    def __init__(self, action: str, identifier: str):
        if action not in (ADDED, REMOVED):
            raise ValueError(f"Unknown device event action: {action}")
        self.action = action
        self.identifier = identifier

    def __eq__(self, other) -> bool:
        if not isinstance(other, DeviceEvent):
            return False
        return (self.action, self.identifier) == (other.action, other.identifier)

    def __repr__(self) -> str:
        return f"DeviceEvent({self.action}, {self.identifier})"


DeviceEventCallback = Callable[[DeviceEvent], None]


class AbstractDeviceWatch(ABC):
    """Base class for device namespace watches"""

    def __init__(self, dev_dir: str = DEFAULT_DEV_DIR):
        """
        Initialize the watch

        Args:
            dev_dir: Directory whose entries are the device identifiers
        """
        self.dev_dir = dev_dir
        self.callbacks: List[DeviceEventCallback] = []
        self.running = False
        self.thread: Optional[threading.Thread] = None

    def add_callback(self, callback: DeviceEventCallback):
        """Add a callback called with each DeviceEvent"""
        self.callbacks.append(callback)

    def start_monitoring(self):
        """
        Acquire the watch primitive and start the monitor thread

        Raises:
            WatchPrimitiveUnavailable: If the namespace cannot be watched
        """
        if self.running:
            return

        self._open()
        self.running = True
        self.thread = threading.Thread(target=self._monitor_loop, name=type(self).__name__, daemon=True)
        self.thread.start()

    def stop_monitoring(self, timeout: float = 5.0):
        """Stop the monitor thread"""
        if not self.running:
            return

        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)

    @abstractmethod
    def enumerate(self) -> List[str]:
        """
        List identifiers currently present in the namespace

        Returns:
            Sorted identifiers
        """
        pass

    @abstractmethod
    def _open(self):
        """Acquire the underlying primitive, raising WatchPrimitiveUnavailable"""
        pass

    @abstractmethod
    def _monitor_loop(self):
        """Thread body: emit initial ADDED events, then changes"""
        pass

    def _emit(self, event: DeviceEvent):
        for callback in list(self.callbacks):
            try:
                callback(event)
            except Exception as e:
                DeviceLogger.error(f"Error in device watch callback for {event}: {e}")


class DirectoryDeviceWatch(AbstractDeviceWatch):
    """Polls a directory of device links and diffs successive snapshots"""

    def __init__(self, dev_dir: str = DEFAULT_DEV_DIR, poll_interval: float = 0.5,
                 create_dir: bool = True):
        """
        Initialize the directory watch

        Args:
            dev_dir: Directory to watch
            poll_interval: Seconds between directory scans
            create_dir: Create the directory if it does not exist
        """
        super().__init__(dev_dir)
        self.poll_interval = poll_interval
        self.create_dir = create_dir
        self.last_snapshot: Optional[DeviceSnapshot] = None

    def enumerate(self) -> List[str]:
        return sorted(os.listdir(self.dev_dir))

    def create_snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(self.enumerate())

    def _open(self):
        try:
            if self.create_dir:
                os.makedirs(self.dev_dir, exist_ok=True)
            self.enumerate()
        except OSError as e:
            raise WatchPrimitiveUnavailable(f"Cannot watch device directory {self.dev_dir}: {e}") from e

    def poll_once(self):
        """Scan the directory once and emit events for the differences"""
        current_snapshot = self.create_snapshot()
        changes = current_snapshot.compare_with(self.last_snapshot)
        for identifier in changes['removed_devices']:
            self._emit(DeviceEvent(REMOVED, identifier))
        for identifier in changes['added_devices']:
            self._emit(DeviceEvent(ADDED, identifier))
        self.last_snapshot = current_snapshot

    def _monitor_loop(self):
        # First scan compares against nothing and seeds every existing entry
        self.last_snapshot = None
        while self.running:
            try:
                self.poll_once()
            except OSError as e:
                DeviceLogger.error(f"Error reading device directory {self.dev_dir}: {e}")
            time.sleep(self.poll_interval)


class UdevDeviceWatch(AbstractDeviceWatch):
    """Follows udev input events and reports their links inside dev_dir"""

    def __init__(self, dev_dir: str = DEFAULT_DEV_DIR, poll_timeout: float = 1.0):
        super().__init__(dev_dir)
        self.poll_timeout = poll_timeout
        self.context: Optional[pyudev.Context] = None
        self.monitor: Optional[pyudev.Monitor] = None
        # sys_path -> identifiers reported on add, used when remove events lack links
        self._known: Dict[str, List[str]] = {}

    def identifiers_for(self, device) -> List[str]:
        """Names of the device's links that live in the watched directory"""
        names = []
        for link in device.device_links:
            if os.path.dirname(link) == self.dev_dir:
                names.append(os.path.basename(link))
        return sorted(names)

    def enumerate(self) -> List[str]:
        context = self.context or pyudev.Context()
        identifiers = []
        for device in context.list_devices(subsystem='input'):
            found = self.identifiers_for(device)
            if found:
                self._known[device.sys_path] = found
                identifiers.extend(found)
        return sorted(identifiers)

    def _open(self):
        try:
            self.context = pyudev.Context()
            self.monitor = pyudev.Monitor.from_netlink(self.context)
            self.monitor.filter_by(subsystem='input')
            self.monitor.start()
        except Exception as e:
            raise WatchPrimitiveUnavailable(f"Cannot open udev monitor: {e}") from e

    def handle_udev_event(self, device):
        """Translate one pyudev device event into DeviceEvents"""
        if device.action == 'add':
            found = self.identifiers_for(device)
            if not found:
                return
            self._known[device.sys_path] = found
            for identifier in found:
                self._emit(DeviceEvent(ADDED, identifier))
        elif device.action == 'remove':
            found = self._known.pop(device.sys_path, None) or self.identifiers_for(device)
            for identifier in found:
                self._emit(DeviceEvent(REMOVED, identifier))

    def _monitor_loop(self):
        try:
            for identifier in self.enumerate():
                self._emit(DeviceEvent(ADDED, identifier))
        except Exception as e:
            DeviceLogger.error(f"Error enumerating udev input devices: {e}")

        while self.running:
            try:
                device = self.monitor.poll(timeout=self.poll_timeout)
            except Exception as e:
                DeviceLogger.error(f"Error in udev monitoring loop: {e}")
                time.sleep(self.poll_timeout)
                continue
            if device is None:
                continue
            self.handle_udev_event(device)
