"""
Error taxonomy for the juggler daemon.

Everything below JugglerError except WatchPrimitiveUnavailable and ConfigError
is recoverable: it is logged with the offending identifier or group key and
the event loop keeps going.
"""


class JugglerError(Exception):
    """Base exception for juggler errors"""
    pass


class MalformedPath(JugglerError):
    """Device node identifier does not follow the PHYSPATH-TAG convention"""

    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        message = f"Malformed device identifier '{identifier}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ClassificationUnavailable(JugglerError):
    """Classification oracle could not produce a result for a device"""

    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        super().__init__(f"Classification unavailable for '{identifier}': {reason}")


class LaunchFailed(JugglerError):
    """Managed process could not be spawned"""

    def __init__(self, group_key: str, reason: str = ""):
        self.group_key = group_key
        self.reason = reason
        super().__init__(f"Failed to launch process for group '{group_key}': {reason}")


class ProcessExitedUnexpectedly(JugglerError):
    """Managed process exited while its group was still ready"""

    def __init__(self, group_key: str, returncode=None):
        self.group_key = group_key
        self.returncode = returncode
        super().__init__(f"Process for group '{group_key}' exited unexpectedly (status {returncode})")


class WatchPrimitiveUnavailable(JugglerError):
    """Device namespace cannot be watched; fatal at startup"""
    pass


class ConfigError(JugglerError):
    """Configuration-related error; fatal at startup"""
    pass
