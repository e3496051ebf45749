"""
Device watch factory
"""
import platform
from typing import List, Optional

from trackdevice.DeviceWatch import AbstractDeviceWatch, DEFAULT_DEV_DIR
from trackutils.errors import WatchPrimitiveUnavailable

WATCH_DIRECTORY = "directory"
WATCH_UDEV = "udev"


def create_device_watch(kind: str = WATCH_DIRECTORY, dev_dir: str = DEFAULT_DEV_DIR,
                        poll_interval: float = 0.5) -> AbstractDeviceWatch:
    """
    Create a device watch of the requested kind

    Args:
        kind: "directory" (poll a directory of links) or "udev" (netlink monitor)
        dev_dir: Directory whose entries are the device identifiers
        poll_interval: Seconds between scans for the directory watch

    Returns:
        Device watch instance, not yet started

    Raises:
        WatchPrimitiveUnavailable: If the kind is unknown or unsupported here
    """
    if kind == WATCH_DIRECTORY:
        from trackdevice.DeviceWatch import DirectoryDeviceWatch
        return DirectoryDeviceWatch(dev_dir, poll_interval)
    elif kind == WATCH_UDEV:
        if not is_platform_supported(kind):
            raise WatchPrimitiveUnavailable(f"udev watch is not available on '{get_current_platform()}'")
        from trackdevice.DeviceWatch import UdevDeviceWatch
        return UdevDeviceWatch(dev_dir)
    else:
        raise WatchPrimitiveUnavailable(f"Unknown watch kind '{kind}'")


def get_supported_watch_kinds(platform_name: Optional[str] = None) -> List[str]:
    """Watch kinds usable on a platform"""
    if platform_name is None:
        platform_name = get_current_platform()
    if platform_name == "linux":
        return [WATCH_DIRECTORY, WATCH_UDEV]
    return [WATCH_DIRECTORY]


def is_platform_supported(kind: str, platform_name: Optional[str] = None) -> bool:
    return kind in get_supported_watch_kinds(platform_name)


def get_current_platform() -> str:
    return platform.system().lower()
