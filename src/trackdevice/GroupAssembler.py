from typing import Dict, List, Optional, Any

from trackdevice.DeviceModels import Device, DeviceClass, Group, PresenceState
from trackdevice.PathParser import parse_identifier
from trackutils import logger
from trackutils.errors import MalformedPath

DeviceLogger = logger.device_logger


class GroupAssembler:
    """
    Owns the device table and its partition into groups keyed by physical path.

    Every mutation returns the affected group key (or None) so the caller can
    re-run readiness evaluation. This class never starts or stops processes.
    """

    def __init__(self):
        self._devices: Dict[str, Device] = {}
        self._groups: Dict[str, Group] = {}
        self._generations: Dict[str, int] = {}

    def on_device_added(self, identifier: str) -> Optional[str]:
        """
        Record a device that appeared in the namespace

        Args:
            identifier: Device node identifier

        Returns:
            Key of the affected group, None if the identifier was rejected
        """
        try:
            parsed = parse_identifier(identifier)
        except MalformedPath as e:
            DeviceLogger.warning(f"Ignoring device: {e}")
            return None

        existing = self._devices.get(identifier)
        if existing is not None:
            DeviceLogger.debug(f"Device {identifier} already present in group {existing.prefix}")
            return existing.prefix

        generation = self._generations.get(identifier, 0) + 1
        self._generations[identifier] = generation
        device = Device(identifier, parsed.prefix, parsed.role, generation=generation)
        self._devices[identifier] = device

        group = self._groups.get(parsed.prefix)
        if group is None:
            group = Group(parsed.prefix)
            self._groups[parsed.prefix] = group
            DeviceLogger.info(f"New group {parsed.prefix}")
        group.members.add(identifier)

        DeviceLogger.info(f"Added {device} to group {parsed.prefix}")
        return parsed.prefix

    def on_device_removed(self, identifier: str) -> Optional[str]:
        """
        Remove a device that disappeared from the namespace

        Args:
            identifier: Device node identifier

        Returns:
            Key of the affected group, None if the device was unknown
        """
        device = self._devices.pop(identifier, None)
        if device is None:
            DeviceLogger.debug(f"Remove for unknown device {identifier}")
            return None

        device.presence = PresenceState.ABSENT
        key = device.prefix
        group = self._groups.get(key)
        if group is not None:
            group.members.discard(identifier)
            if group.is_empty:
                del self._groups[key]
                DeviceLogger.info(f"Group {key} is empty, purged")

        DeviceLogger.info(f"Removed {identifier} from group {key}")
        return key

    def on_classification_resolved(self, identifier: str, device_class: DeviceClass,
                                   generation: Optional[int] = None) -> Optional[str]:
        """
        Store the resolved class of a device

        Args:
            identifier: Device node identifier
            device_class: Class reported by the classifier
            generation: Generation the classification was requested for

        Returns:
            Key of the affected group, None if the result is stale
        """
        device = self._devices.get(identifier)
        if device is None:
            DeviceLogger.debug(f"Dropping classification for departed device {identifier}")
            return None
        if generation is not None and generation != device.generation:
            DeviceLogger.debug(f"Dropping stale classification for {identifier} (generation {generation})")
            return None

        device.resolved_class = device_class
        return device.prefix

    # === Read access ===

    def get_device(self, identifier: str) -> Optional[Device]:
        return self._devices.get(identifier)

    def get_group(self, key: str) -> Optional[Group]:
        return self._groups.get(key)

    def group_members(self, key: str) -> List[Device]:
        """Devices of a group, sorted by identifier"""
        group = self._groups.get(key)
        if group is None:
            return []
        return [self._devices[i] for i in sorted(group.members)]

    def pending_classification(self, key: str) -> List[Device]:
        return [d for d in self.group_members(key) if d.needs_classification]

    @property
    def groups(self) -> List[str]:
        return sorted(self._groups)

    @property
    def devices(self) -> List[Device]:
        return [self._devices[i] for i in sorted(self._devices)]

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the current table for status reporting"""
        return {
            'groups': [self._groups[k].to_dict() for k in sorted(self._groups)],
            'devices': [d.to_dict() for d in self.devices],
        }
