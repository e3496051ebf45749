"""
Device node identifier parsing.

Identifiers follow the PHYSPATH-TAG convention used by udev's by-path links
(e.g. "usb-1.2-event-kbd", "pci-0000:00:14.0-usb-0:1.2:1.0-event-mouse") or the
"<physpath>__<tag>" links written by custom udev rules. The ":config.interface"
suffix of by-path names is dropped from the prefix, so every interface of one
composite USB device lands in the same group.
"""
import os
import re
from typing import Dict, List, NamedTuple

from trackdevice.DeviceModels import DeviceRole
from trackutils.errors import MalformedPath

TAG_ROLES: Dict[str, DeviceRole] = {
    "event-kbd": DeviceRole.KEYBOARD,
    "kbd": DeviceRole.KEYBOARD,
    "keys": DeviceRole.KEYBOARD,
    "mouse": DeviceRole.POINTER,
    "ptr": DeviceRole.POINTER,
    "event-mouse": DeviceRole.TRACKPAD_CANDIDATE,
    "pad": DeviceRole.TRACKPAD_CANDIDATE,
    "event": DeviceRole.TRACKPAD_CANDIDATE,
    "event-joystick": DeviceRole.UNKNOWN,
    "joystick": DeviceRole.UNKNOWN,
}

TAG_SEPARATORS = ("__", "-")

# Longest first so "event-mouse" wins over "mouse"
_TAGS_BY_LENGTH: List[str] = sorted(TAG_ROLES, key=len, reverse=True)

# Final prefix segment: port numbers joined by dots (colons in udev by-path names)
_TOPOLOGY_SEGMENT = re.compile(r"^\d+(?:[.:]\d+)*$")

# "bus:ports:config.interface", as in "0:1.2:1.0"
_INTERFACE_SEGMENT = re.compile(r"^(\d+:\d+(?:\.\d+)*):\d+\.\d+$")


class ParsedPath(NamedTuple):
    prefix: str
    tag: str
    role: DeviceRole


def split_tag(name: str):
    """Return (prefix, tag) for the longest recognized tag suffix, or None"""
    for tag in _TAGS_BY_LENGTH:
        for separator in TAG_SEPARATORS:
            suffix = separator + tag
            if name.endswith(suffix):
                return name[:-len(suffix)], tag
    return None


def parse_identifier(identifier: str) -> ParsedPath:
    """
    Parse a device node identifier into its physical-path prefix and role tag

    Args:
        identifier: Namespace entry name, optionally with a leading directory

    Returns:
        ParsedPath with prefix, tag and role

    Raises:
        MalformedPath: If the identifier does not match PHYSPATH-TAG
    """
    if not isinstance(identifier, str) or not identifier.strip():
        raise MalformedPath(str(identifier), "empty identifier")

    name = os.path.basename(identifier.rstrip("/"))
    split = split_tag(name)
    if split is None:
        raise MalformedPath(identifier, "no recognized tag suffix")

    prefix, tag = split
    if not prefix:
        raise MalformedPath(identifier, "missing physical path")

    last_segment = prefix.rsplit("-", 1)[-1]
    if not _TOPOLOGY_SEGMENT.match(last_segment):
        raise MalformedPath(identifier, f"physical path '{prefix}' does not end in a USB topology segment")

    interface = _INTERFACE_SEGMENT.match(last_segment)
    if interface:
        prefix = prefix[:-len(last_segment)] + interface.group(1)

    return ParsedPath(prefix=prefix, tag=tag, role=TAG_ROLES[tag])
