import os
import subprocess
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from trackdevice.DeviceModels import DeviceClass
from trackutils import logger
from trackutils.errors import ClassificationUnavailable

DeviceLogger = logger.device_logger

DEFAULT_ORACLE_COMMAND = ["udevadm", "info", "--query=property", "--name", "{node}"]

# Single-line labels an oracle may print instead of udev properties
LABELS = {
    "multitouch-trackpad": DeviceClass.MULTITOUCH_TRACKPAD,
    "trackpad": DeviceClass.MULTITOUCH_TRACKPAD,
    "touchpad": DeviceClass.MULTITOUCH_TRACKPAD,
    "other": DeviceClass.MOUSE,
    "mouse": DeviceClass.MOUSE,
}


def parse_oracle_output(output: str) -> Optional[DeviceClass]:
    """
    Interpret oracle output

    Args:
        output: stdout of the oracle command

    Returns:
        MULTITOUCH_TRACKPAD or MOUSE, None if the output is not understood
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return None

    if len(lines) == 1 and "=" not in lines[0]:
        return LABELS.get(lines[0].lower())

    properties = {}
    for line in lines:
        key, sep, value = line.partition("=")
        if sep:
            properties[key.strip()] = value.strip()

    if properties.get("ID_INPUT_TOUCHPAD") == "1":
        return DeviceClass.MULTITOUCH_TRACKPAD
    if properties.get("ID_INPUT_MOUSE") == "1" or properties.get("ID_INPUT") == "1":
        return DeviceClass.MOUSE
    return None


class DeviceClassifier:
    """
    Asks an external oracle whether an ambiguous device is a trackpad.

    classify() blocks on a subprocess, so it is only ever called from worker
    threads. Results are cached per (identifier, generation), so a result that
    lands after forget() never answers for a re-added device.
    """

    def __init__(self,
                 dev_dir: str = "",
                 command: Optional[Sequence[str]] = None,
                 timeout: float = 5.0):
        """
        Initialize the classifier

        Args:
            dev_dir: Directory the identifiers live in, used to build node paths
            command: Oracle argv, "{node}" is replaced by the node path
            timeout: Seconds to wait for the oracle
        """
        self.dev_dir = dev_dir
        self.command: List[str] = list(command or DEFAULT_ORACLE_COMMAND)
        self.timeout = timeout
        self._cache: Dict[Tuple[str, Optional[int]], DeviceClass] = {}
        self._lock = threading.Lock()

    def node_path(self, identifier: str) -> str:
        if os.path.isabs(identifier) or not self.dev_dir:
            return identifier
        return os.path.join(self.dev_dir, identifier)

    def build_command(self, identifier: str) -> List[str]:
        node = self.node_path(identifier)
        argv = [part.replace("{node}", node) for part in self.command]
        if not any("{node}" in part for part in self.command):
            argv.append(node)
        return argv

    def cached(self, identifier: str, generation: Optional[int] = None) -> Optional[DeviceClass]:
        with self._lock:
            return self._cache.get((identifier, generation))

    def forget(self, identifier: str) -> None:
        """Drop cached results for every generation, called when the device goes away"""
        with self._lock:
            for key in [key for key in self._cache if key[0] == identifier]:
                del self._cache[key]

    def classify(self, identifier: str, generation: Optional[int] = None) -> DeviceClass:
        """
        Classify a device, using the cache when possible

        Args:
            identifier: Device node identifier
            generation: Presence generation the result is cached under

        Returns:
            DeviceClass.MULTITOUCH_TRACKPAD or DeviceClass.MOUSE

        Raises:
            ClassificationUnavailable: Oracle missing, failed or unparseable
        """
        cached = self.cached(identifier, generation)
        if cached is not None:
            return cached

        argv = self.build_command(identifier)
        DeviceLogger.debug(f"Classifying {identifier}: {' '.join(argv)}")
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise ClassificationUnavailable(identifier, f"oracle '{argv[0]}' not found")
        except subprocess.TimeoutExpired:
            raise ClassificationUnavailable(identifier, f"oracle timed out after {self.timeout}s")
        except OSError as e:
            raise ClassificationUnavailable(identifier, str(e))

        if result.returncode != 0:
            reason = f"oracle exited with status {result.returncode}"
            if result.stderr and result.stderr.strip():
                reason += f": {result.stderr.strip()}"
            raise ClassificationUnavailable(identifier, reason)

        device_class = parse_oracle_output(result.stdout or "")
        if device_class is None:
            raise ClassificationUnavailable(identifier, "unparseable oracle output")

        with self._lock:
            self._cache[(identifier, generation)] = device_class
        DeviceLogger.info(f"Classified {identifier} as {device_class.value}")
        return device_class
