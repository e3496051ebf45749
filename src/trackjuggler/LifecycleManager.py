"""
Per-group supervision of the managed remapping process.

State machine per group key:

    idle -> starting -> running -> stopping -> idle
                          |
                          +-> (exits on its own) -> crashed-backoff -> idle

All methods except the *_worker ones run on the coordinator thread. Spawning
and terminating happen on the executor and report back through post().
"""
import os
import subprocess
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Any

from trackdevice.DeviceModels import Device, DeviceClass, GroupState
from trackjuggler.JugglerEvents import CoordinatorEvent, EventType
from trackutils import logger
from trackutils.errors import LaunchFailed, ProcessExitedUnexpectedly

ProcessLogger = logger.process_logger


class ProcessState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED_BACKOFF = "crashed-backoff"


class ManagedProcess:
    """A running process supervised for one group"""

    def __init__(self, group_key: str, process, config_path: str, argv: List[str], restart_count: int = 0):
        self.group_key = group_key
        self.process = process
        self.config_path = config_path
        self.argv = list(argv)
        self.started_at = datetime.now()
        self.restart_count = restart_count

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, 'pid', None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'group': self.group_key,
            'pid': self.pid,
            'argv': list(self.argv),
            'started_at': self.started_at.isoformat(),
            'restart_count': self.restart_count,
        }


def terminate_process(process, grace_period: float) -> Optional[int]:
    """
    Ask a process to exit, killing it if it outlives the grace period

    Args:
        process: subprocess.Popen-like handle
        grace_period: Seconds between terminate and kill

    Returns:
        Exit status, None if it could not be collected
    """
    if process.poll() is not None:
        return process.returncode

    try:
        process.terminate()
    except ProcessLookupError:
        pass

    try:
        return process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        ProcessLogger.warning(f"Process {process.pid} ignored terminate, killing")

    try:
        process.kill()
    except ProcessLookupError:
        pass

    try:
        return process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        ProcessLogger.error(f"Process {process.pid} did not exit after kill")
        return None


class LifecycleManager:
    """Starts, stops and watches one managed process per ready group"""

    def __init__(self,
                 config_path: str,
                 post: Callable[[CoordinatorEvent], None],
                 executor,
                 executable: str = "trackjoy",
                 dev_dir: str = "",
                 grace_period: float = 3.0,
                 bind_devices: bool = True,
                 restart_on_crash: bool = False,
                 crash_backoff: float = 5.0,
                 popen: Callable = subprocess.Popen,
                 timer_factory: Callable = threading.Timer):
        """
        Initialize the lifecycle manager

        Args:
            config_path: Configuration file passed to each process
            post: Puts an event on the coordinator queue
            executor: concurrent.futures-style executor for blocking work
            executable: Process executable, resolved through PATH
            dev_dir: Directory used to turn identifiers into node paths
            grace_period: Seconds between terminate and kill
            bind_devices: Pass the group's device nodes on the command line
            restart_on_crash: Re-check the group once crash backoff expires
            crash_backoff: Seconds spent in crashed-backoff
            popen: Process factory
            timer_factory: threading.Timer-compatible factory for backoff timers
        """
        self.config_path = config_path
        self.post = post
        self.executor = executor
        self.executable = executable
        self.dev_dir = dev_dir
        self.grace_period = grace_period
        self.bind_devices = bind_devices
        self.restart_on_crash = restart_on_crash
        self.crash_backoff = crash_backoff
        self.popen = popen
        self.timer_factory = timer_factory

        self._states: Dict[str, ProcessState] = {}
        self._processes: Dict[str, ManagedProcess] = {}
        self._stop_pending = set()
        self._restart_counts: Dict[str, int] = {}
        self._timers: Dict[str, Any] = {}
        self._closing = threading.Event()

    # === Queries ===

    def state_of(self, key: str) -> ProcessState:
        return self._states.get(key, ProcessState.IDLE)

    def get_process(self, key: str) -> Optional[ManagedProcess]:
        return self._processes.get(key)

    @property
    def running_groups(self) -> List[str]:
        return sorted(self._processes)

    def status(self) -> Dict[str, Any]:
        return {
            key: {
                'state': state.value,
                'process': self._processes[key].to_dict() if key in self._processes else None,
            }
            for key, state in sorted(self._states.items())
        }

    # === Command line ===

    def node_path(self, identifier: str) -> str:
        if os.path.isabs(identifier) or not self.dev_dir:
            return identifier
        return os.path.join(self.dev_dir, identifier)

    def build_command(self, key: str, bound_devices: List[Device]) -> List[str]:
        """
        Build the managed process argv

        Args:
            key: Group key
            bound_devices: Devices selected for the process

        Returns:
            [executable, config, keys NODE ..., pad NODE ...] or, with binding
            disabled, [executable, config, --group KEY]
        """
        argv = [self.executable, self.config_path]
        if not self.bind_devices:
            return argv + ["--group", key]
        for device in bound_devices:
            kind = "keys" if device.resolved_class == DeviceClass.KEYBOARD else "pad"
            argv.extend([kind, self.node_path(device.identifier)])
        return argv

    # === Transitions driven by the coordinator ===

    def on_readiness(self, key: str, group_state: GroupState, bound_devices: Optional[List[Device]] = None):
        """
        React to a fresh readiness evaluation of a group

        Args:
            key: Group key
            group_state: Result of the readiness evaluation
            bound_devices: Devices to pass to a newly started process
        """
        state = self.state_of(key)

        if group_state == GroupState.READY:
            if state == ProcessState.IDLE:
                self._start(key, bound_devices or [])
            elif state == ProcessState.STARTING:
                self._stop_pending.discard(key)
            return

        if state == ProcessState.RUNNING:
            ProcessLogger.info(f"Group {key} is {group_state.value}, stopping its process")
            self._stop(key)
        elif state == ProcessState.STARTING:
            self._stop_pending.add(key)
        elif state == ProcessState.IDLE and group_state == GroupState.EMPTY:
            self.forget(key)

    def _start(self, key: str, bound_devices: List[Device]):
        argv = self.build_command(key, bound_devices)
        self._states[key] = ProcessState.STARTING
        ProcessLogger.info(f"Launching process for group {key}: {' '.join(argv)}")
        self.executor.submit(self._spawn_worker, key, argv)

    def _stop(self, key: str):
        managed = self._processes[key]
        self._states[key] = ProcessState.STOPPING
        self.executor.submit(self._terminate_worker, key, managed.process)

    def forget(self, key: str):
        """Drop bookkeeping for a group that no longer exists"""
        if self.state_of(key) != ProcessState.IDLE:
            return
        self._states.pop(key, None)
        self._restart_counts.pop(key, None)
        self._stop_pending.discard(key)

    # === Completions posted by workers ===

    def on_started(self, key: str, process, argv: List[str]):
        if self.state_of(key) != ProcessState.STARTING or key in self._processes:
            # Cannot happen through on_readiness; never keep two processes for a key
            ProcessLogger.error(f"Unexpected process start for group {key}, terminating it")
            self.executor.submit(terminate_process, process, self.grace_period)
            return

        managed = ManagedProcess(key, process, self.config_path, argv, self._restart_counts.get(key, 0))
        self._processes[key] = managed
        self._states[key] = ProcessState.RUNNING
        ProcessLogger.info(f"Process {managed.pid} running for group {key}")
        self._watch_exit(key, process)

        if key in self._stop_pending:
            self._stop_pending.discard(key)
            ProcessLogger.info(f"Group {key} stopped being ready while launching, stopping process")
            self._stop(key)

    def on_launch_failed(self, key: str, error: LaunchFailed):
        ProcessLogger.error(f"{error}")
        self._states[key] = ProcessState.IDLE
        self._stop_pending.discard(key)

    def on_exited(self, key: str, process, returncode: Optional[int]) -> Optional[ProcessExitedUnexpectedly]:
        """
        Handle a process exit observed by its watcher thread

        Returns:
            The ProcessExitedUnexpectedly error if this exit was not requested
        """
        managed = self._processes.get(key)
        if managed is None or managed.process is not process:
            return None
        if self.state_of(key) != ProcessState.RUNNING:
            # Requested stop; on_stopped finishes the transition
            return None

        del self._processes[key]
        error = ProcessExitedUnexpectedly(key, returncode)
        ProcessLogger.error(f"{error}")

        if returncode != 0 and self.restart_on_crash:
            self._restart_counts[key] = managed.restart_count + 1
            self._states[key] = ProcessState.CRASHED_BACKOFF
            ProcessLogger.info(f"Group {key} in crash backoff for {self.crash_backoff}s")
            self._schedule_backoff(key)
        else:
            self._states[key] = ProcessState.IDLE
        return error

    def on_stopped(self, key: str, process, returncode: Optional[int]):
        managed = self._processes.get(key)
        if managed is None or managed.process is not process:
            return
        if returncode is None:
            returncode = process.poll()
        if returncode is None:
            # Still alive after kill; the group stays stopping until it is reaped
            ProcessLogger.error(f"Process {managed.pid} for group {key} survived kill, retrying")
            self.executor.submit(self._terminate_worker, key, process)
            return
        del self._processes[key]
        self._states[key] = ProcessState.IDLE
        ProcessLogger.info(f"Process {managed.pid} for group {key} stopped (status {returncode})")

    def end_backoff(self, key: str) -> bool:
        """Leave crashed-backoff; True if the group should be re-evaluated"""
        self._timers.pop(key, None)
        if self.state_of(key) != ProcessState.CRASHED_BACKOFF:
            return False
        self._states[key] = ProcessState.IDLE
        return True

    # === Workers ===

    def _spawn_worker(self, key: str, argv: List[str]):
        try:
            process = self.popen(argv)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            self.post(CoordinatorEvent(EventType.LAUNCH_FAILED, group_key=key,
                                       data={'error': LaunchFailed(key, str(e))}))
            return

        if self._closing.is_set():
            terminate_process(process, self.grace_period)
            return
        self.post(CoordinatorEvent(EventType.PROCESS_STARTED, group_key=key,
                                   data={'process': process, 'argv': argv}))

    def _terminate_worker(self, key: str, process):
        returncode = terminate_process(process, self.grace_period)
        self.post(CoordinatorEvent(EventType.PROCESS_STOPPED, group_key=key,
                                   data={'process': process, 'returncode': returncode}))

    def _watch_exit(self, key: str, process):
        def wait_for_exit():
            returncode = process.wait()
            self.post(CoordinatorEvent(EventType.PROCESS_EXITED, group_key=key,
                                       data={'process': process, 'returncode': returncode}))

        thread = threading.Thread(target=wait_for_exit, name=f"exit-{key}", daemon=True)
        thread.start()

    def _schedule_backoff(self, key: str):
        timer = self.timer_factory(self.crash_backoff, self.post,
                                   args=(CoordinatorEvent(EventType.BACKOFF_EXPIRED, group_key=key),))
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    # === Shutdown ===

    def shutdown(self, deadline: float):
        """
        Terminate every managed process

        Args:
            deadline: Upper bound in seconds for each process to exit
        """
        self._closing.set()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        grace = min(self.grace_period, deadline)
        threads = []
        for key, managed in list(self._processes.items()):
            ProcessLogger.info(f"Shutting down process {managed.pid} for group {key}")
            thread = threading.Thread(target=terminate_process, args=(managed.process, grace), daemon=True)
            thread.start()
            threads.append(thread)
        for thread in threads:
            thread.join(timeout=2 * grace + 1)

        self._processes.clear()
        self._states.clear()
        self._stop_pending.clear()

    def adopt_late_start(self, process):
        """Terminate a process whose start was reported after shutdown began"""
        terminate_process(process, self.grace_period)
