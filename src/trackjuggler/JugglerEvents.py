from enum import Enum, auto
from typing import Any, Dict, Optional
import time


class EventType(Enum):
    """Events carried by the coordinator queue"""
    DEVICE_ADDED = auto()
    DEVICE_REMOVED = auto()
    CLASSIFIED = auto()
    CLASSIFICATION_FAILED = auto()
    PROCESS_STARTED = auto()
    LAUNCH_FAILED = auto()
    PROCESS_EXITED = auto()
    PROCESS_STOPPED = auto()
    BACKOFF_EXPIRED = auto()
    SHUTDOWN = auto()


class CoordinatorEvent:
    """One entry of the coordinator queue; workers only ever create these"""

    def __init__(self, event_type: EventType,
                 identifier: Optional[str] = None,
                 group_key: Optional[str] = None,
                 data: Optional[Dict[str, Any]] = None):
        self.event_type = event_type
        self.identifier = identifier
        self.group_key = group_key
        self.data = data or {}
        self.timestamp = time.monotonic()

    def __repr__(self) -> str:
        target = self.identifier or self.group_key or ""
        return f"CoordinatorEvent({self.event_type.name}, {target})"
