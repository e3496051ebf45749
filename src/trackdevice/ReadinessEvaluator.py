"""
Group readiness.

Pure functions of a group's members and the requirement; no state is kept
between evaluations.
"""
from typing import Dict, Iterable, List

from trackdevice.DeviceModels import Device, DeviceClass, GroupState, Requirement


def count_classes(members: Iterable[Device]) -> Dict[DeviceClass, int]:
    counts = {c: 0 for c in DeviceClass}
    for device in members:
        counts[device.resolved_class] += 1
    return counts


def evaluate(members: List[Device], requirement: Requirement) -> GroupState:
    """
    Classify a group against the requirement

    Args:
        members: Devices currently in the group
        requirement: Minimum keyboards and trackpads

    Returns:
        EMPTY, INCOMPLETE or READY
    """
    if not members:
        return GroupState.EMPTY

    counts = count_classes(members)
    if (counts[DeviceClass.KEYBOARD] >= requirement.min_keyboards and
            counts[DeviceClass.MULTITOUCH_TRACKPAD] >= requirement.min_trackpads):
        return GroupState.READY
    return GroupState.INCOMPLETE


def select_bound_devices(members: List[Device], requirement: Requirement) -> List[Device]:
    """
    Pick the devices handed to the managed process when binding is enabled.

    Keyboards first, then trackpads, each the lowest sorted identifiers up to
    the required count.
    """
    keyboards = sorted((d for d in members if d.resolved_class == DeviceClass.KEYBOARD),
                       key=lambda d: d.identifier)
    trackpads = sorted((d for d in members if d.resolved_class == DeviceClass.MULTITOUCH_TRACKPAD),
                       key=lambda d: d.identifier)
    return keyboards[:requirement.min_keyboards] + trackpads[:requirement.min_trackpads]
