from enum import Enum
from typing import List, Dict, Optional, Any, Set
from datetime import datetime


class DeviceRole(Enum):
    """Declared function of a device, taken from its identifier tag"""
    KEYBOARD = "keyboard"
    POINTER = "pointer"
    TRACKPAD_CANDIDATE = "trackpad-candidate"
    UNKNOWN = "unknown"


class DeviceClass(Enum):
    """Functional class of a device once resolved"""
    KEYBOARD = "keyboard"
    MOUSE = "mouse"
    MULTITOUCH_TRACKPAD = "multitouch-trackpad"
    UNCLASSIFIED = "unclassified"


class PresenceState(Enum):
    PRESENT = "present"
    ABSENT = "absent"


class GroupState(Enum):
    """Readiness of a group against the requirement"""
    EMPTY = "empty"
    INCOMPLETE = "incomplete"
    READY = "ready"


def initial_class_for_role(role: DeviceRole) -> DeviceClass:
    """Class a device starts with; only ambiguous roles need the oracle"""
    if role == DeviceRole.KEYBOARD:
        return DeviceClass.KEYBOARD
    if role == DeviceRole.POINTER:
        return DeviceClass.MOUSE
    return DeviceClass.UNCLASSIFIED


class Device:
    """A device node currently known to the group assembler"""

    def __init__(self,
                 identifier: str,
                 prefix: str,
                 role: DeviceRole,
                 resolved_class: Optional[DeviceClass] = None,
                 generation: int = 0):
        """
        Initialize a device record

        Args:
            identifier: Device node identifier (namespace entry name)
            prefix: Physical-path prefix shared by co-located devices
            role: Role parsed from the identifier tag
            resolved_class: Class, defaults to what the role implies
            generation: Incremented each time the identifier is re-added
        """
        self.identifier = identifier
        self.prefix = prefix
        self.role = role
        self.resolved_class = resolved_class or initial_class_for_role(role)
        self.presence = PresenceState.PRESENT
        self.generation = generation
        self.added_at = datetime.now()

    @property
    def needs_classification(self) -> bool:
        return (self.role == DeviceRole.TRACKPAD_CANDIDATE and
                self.resolved_class == DeviceClass.UNCLASSIFIED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'prefix': self.prefix,
            'role': self.role.value,
            'class': self.resolved_class.value,
            'presence': self.presence.value,
            'generation': self.generation,
        }

    def __str__(self) -> str:
        return f"Device[{self.identifier}]: {self.role.value}/{self.resolved_class.value}"


class Group:
    """Devices currently sharing one physical-path prefix"""

    def __init__(self, key: str):
        self.key = key
        self.members: Set[str] = set()

    @property
    def is_empty(self) -> bool:
        return not self.members

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'members': sorted(self.members),
        }


class Requirement:
    """Minimum device classes a group needs before a process is launched"""

    def __init__(self, min_keyboards: int = 1, min_trackpads: int = 1):
        if min_keyboards < 0 or min_trackpads < 0:
            raise ValueError("Requirement counts cannot be negative")
        self._min_keyboards = min_keyboards
        self._min_trackpads = min_trackpads

    @property
    def min_keyboards(self) -> int:
        return self._min_keyboards

    @property
    def min_trackpads(self) -> int:
        return self._min_trackpads

    @property
    def is_empty(self) -> bool:
        return self._min_keyboards == 0 and self._min_trackpads == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min_keyboards': self._min_keyboards,
            'min_trackpads': self._min_trackpads,
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, Requirement):
            return False
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"Requirement(keyboards>={self._min_keyboards}, trackpads>={self._min_trackpads})"


class DeviceSnapshot:
    """Set of identifiers seen in the device namespace at one point in time"""

    def __init__(self, identifiers: List[str]):
        self.timestamp = datetime.now()
        self.identifiers = sorted(set(identifiers))

    def compare_with(self, other: Optional['DeviceSnapshot']) -> Dict[str, List[str]]:
        """
        Compare this snapshot with an earlier one

        Args:
            other: Earlier snapshot, None means nothing was present

        Returns:
            Dict with 'added_devices' and 'removed_devices' identifier lists
        """
        previous = set(other.identifiers) if other else set()
        current = set(self.identifiers)
        return {
            'added_devices': sorted(current - previous),
            'removed_devices': sorted(previous - current),
        }
