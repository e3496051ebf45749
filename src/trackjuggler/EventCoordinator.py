"""
Serialized control loop.

Watch events, classification results and process notifications all arrive on
one queue and are handled one at a time by a single thread, which is the only
writer of the device table and of the lifecycle state. Blocking work goes to
the executor and comes back as another event.
"""
import logging
import queue
import threading
import time
from typing import Callable, Optional, Set, Tuple

from trackdevice.DeviceClassifier import DeviceClassifier
from trackdevice.DeviceModels import DeviceClass, GroupState, Requirement
from trackdevice.GroupAssembler import GroupAssembler
from trackdevice.ReadinessEvaluator import evaluate, select_bound_devices
from trackjuggler.JugglerConfig import UNCLASSIFIED_NON_MATCHING, UNCLASSIFIED_PENDING
from trackjuggler.JugglerEvents import CoordinatorEvent, EventType
from trackjuggler.LifecycleManager import LifecycleManager, ProcessState
from trackutils import logger
from trackutils.errors import ClassificationUnavailable

CoreLogger = logger.core_logger

# Longest wait on the queue when nothing is pending, keeps signals responsive
IDLE_WAIT = 1.0


class EventCoordinator:
    """Owns the event queue and drives GroupAssembler and LifecycleManager"""

    def __init__(self,
                 requirement: Requirement,
                 classifier: DeviceClassifier,
                 executor,
                 debounce: float = 1.0,
                 unclassified_policy: str = UNCLASSIFIED_PENDING,
                 shutdown_deadline: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the coordinator

        Args:
            requirement: Devices a group needs to be ready
            classifier: Oracle wrapper, only called on executor threads
            executor: concurrent.futures-style executor shared with the lifecycle manager
            debounce: Quiet period in seconds before dirty groups are evaluated
            unclassified_policy: "pending" or "non-matching" for failed classifications
            shutdown_deadline: Seconds allowed for pending work at shutdown
            clock: Monotonic time source
        """
        self.requirement = requirement
        self.classifier = classifier
        self.executor = executor
        self.debounce = debounce
        self.unclassified_policy = unclassified_policy
        self.shutdown_deadline = shutdown_deadline
        self.clock = clock

        # SimpleQueue.put is reentrant, so stop() may be called from a signal handler
        self.queue: "queue.SimpleQueue[CoordinatorEvent]" = queue.SimpleQueue()
        self.assembler = GroupAssembler()
        self.lifecycle: Optional[LifecycleManager] = None
        self.watch = None

        self._dirty: Set[str] = set()
        self._deadline: Optional[float] = None
        self._in_flight: Set[Tuple[str, int]] = set()
        self._closing = False
        self.running = False

    def attach_lifecycle(self, lifecycle: LifecycleManager):
        self.lifecycle = lifecycle

    def attach_watch(self, watch):
        """Watch to stop at shutdown; its events must be posted by the caller"""
        self.watch = watch

    def post(self, event: CoordinatorEvent):
        """Queue an event; safe to call from any thread"""
        self.queue.put(event)

    def stop(self):
        self.post(CoordinatorEvent(EventType.SHUTDOWN))

    # === Loop ===

    def run(self):
        """Process events until a SHUTDOWN event, then shut everything down"""
        self.running = True
        CoreLogger.info("Event coordinator started")
        try:
            while True:
                if self._dirty and self.clock() >= self._deadline:
                    self.flush_dirty()

                try:
                    event = self.queue.get(timeout=self._wait_timeout())
                except queue.Empty:
                    continue

                if not self.handle_event(event):
                    break
        finally:
            self.running = False
            self.shutdown()

    def _wait_timeout(self) -> float:
        if not self._dirty:
            return IDLE_WAIT
        return min(IDLE_WAIT, max(0.0, self._deadline - self.clock()))

    def mark_dirty(self, key: str):
        """Schedule a debounced evaluation of a group, re-arming the window"""
        self._dirty.add(key)
        self._deadline = self.clock() + self.debounce

    def flush_dirty(self):
        """Evaluate every dirty group now"""
        dirty = sorted(self._dirty)
        self._dirty.clear()
        self._deadline = None
        for key in dirty:
            self.evaluate_group(key)
        if CoreLogger.isEnabledFor(logging.DEBUG):
            CoreLogger.debug(f"Devices: {self.assembler.snapshot()}")
            CoreLogger.debug(f"Processes: {self.lifecycle.status()}")

    def evaluate_group(self, key: str) -> GroupState:
        """Run readiness for one group and hand the result to the lifecycle manager"""
        members = self.assembler.group_members(key)
        state = evaluate(members, self.requirement)
        CoreLogger.debug(f"Group {key} evaluated {state.value} with {len(members)} member(s)")
        bound = select_bound_devices(members, self.requirement) if state == GroupState.READY else []
        self.lifecycle.on_readiness(key, state, bound)
        return state

    # === Event handling ===

    def handle_event(self, event: CoordinatorEvent) -> bool:
        """
        Apply one event

        Args:
            event: Event taken from the queue

        Returns:
            False once a SHUTDOWN event has been handled
        """
        CoreLogger.debug(f"Handling {event!r}")
        handler = {
            EventType.DEVICE_ADDED: self._on_device_added,
            EventType.DEVICE_REMOVED: self._on_device_removed,
            EventType.CLASSIFIED: self._on_classified,
            EventType.CLASSIFICATION_FAILED: self._on_classification_failed,
            EventType.PROCESS_STARTED: self._on_process_started,
            EventType.LAUNCH_FAILED: self._on_launch_failed,
            EventType.PROCESS_EXITED: self._on_process_exited,
            EventType.PROCESS_STOPPED: self._on_process_stopped,
            EventType.BACKOFF_EXPIRED: self._on_backoff_expired,
        }.get(event.event_type)

        if event.event_type == EventType.SHUTDOWN:
            CoreLogger.info("Shutdown requested")
            return False

        try:
            handler(event)
        except Exception as e:
            CoreLogger.exception(f"Error handling {event!r}: {e}")
        return True

    def _on_device_added(self, event: CoordinatorEvent):
        key = self.assembler.on_device_added(event.identifier)
        if key is None:
            return
        # Any add into the group also retries classifications that failed earlier
        for device in self.assembler.pending_classification(key):
            self.request_classification(device.identifier, device.generation)
        self.mark_dirty(key)

    def _on_device_removed(self, event: CoordinatorEvent):
        self.classifier.forget(event.identifier)
        key = self.assembler.on_device_removed(event.identifier)
        if key is None:
            return
        self.evaluate_group(key)

    def _on_classified(self, event: CoordinatorEvent):
        generation = event.data.get('generation')
        self._in_flight.discard((event.identifier, generation))
        key = self.assembler.on_classification_resolved(
            event.identifier, event.data['device_class'], generation)
        if key is not None:
            self.mark_dirty(key)

    def _on_classification_failed(self, event: CoordinatorEvent):
        generation = event.data.get('generation')
        self._in_flight.discard((event.identifier, generation))
        CoreLogger.warning(f"{event.data.get('error')}")

        if self.unclassified_policy != UNCLASSIFIED_NON_MATCHING:
            return
        key = self.assembler.on_classification_resolved(event.identifier, DeviceClass.MOUSE, generation)
        if key is not None:
            CoreLogger.info(f"Treating {event.identifier} as non-matching")
            self.mark_dirty(key)

    def _on_process_started(self, event: CoordinatorEvent):
        process = event.data['process']
        if self._closing:
            self.lifecycle.adopt_late_start(process)
            return
        self.lifecycle.on_started(event.group_key, process, event.data.get('argv', []))

    def _on_launch_failed(self, event: CoordinatorEvent):
        self.lifecycle.on_launch_failed(event.group_key, event.data['error'])

    def _on_process_exited(self, event: CoordinatorEvent):
        # No re-evaluation here: a crashed group waits for the next device event or backoff expiry
        self.lifecycle.on_exited(event.group_key, event.data['process'], event.data.get('returncode'))

    def _on_process_stopped(self, event: CoordinatorEvent):
        key = event.group_key
        self.lifecycle.on_stopped(key, event.data['process'], event.data.get('returncode'))
        if self.lifecycle.state_of(key) != ProcessState.IDLE:
            return
        # The group may have become ready again while its process was stopping
        if self.assembler.get_group(key) is not None:
            self.mark_dirty(key)
        else:
            self.lifecycle.forget(key)

    def _on_backoff_expired(self, event: CoordinatorEvent):
        if self.lifecycle.end_backoff(event.group_key):
            CoreLogger.info(f"Crash backoff over for group {event.group_key}, rechecking")
            self.mark_dirty(event.group_key)

    # === Classification ===

    def request_classification(self, identifier: str, generation: int):
        """Send an ambiguous device to the oracle unless a request is already running"""
        token = (identifier, generation)
        if token in self._in_flight:
            return
        self._in_flight.add(token)
        self.executor.submit(self._classify_worker, identifier, generation)

    def _classify_worker(self, identifier: str, generation: int):
        try:
            device_class = self.classifier.classify(identifier, generation)
        except ClassificationUnavailable as e:
            self.post(CoordinatorEvent(EventType.CLASSIFICATION_FAILED, identifier=identifier,
                                       data={'generation': generation, 'error': e}))
            return
        except Exception as e:
            self.post(CoordinatorEvent(EventType.CLASSIFICATION_FAILED, identifier=identifier,
                                       data={'generation': generation,
                                             'error': ClassificationUnavailable(identifier, str(e))}))
            return
        self.post(CoordinatorEvent(EventType.CLASSIFIED, identifier=identifier,
                                   data={'generation': generation, 'device_class': device_class}))

    # === Shutdown ===

    def shutdown(self):
        """Stop the watch, terminate managed processes and wait for workers"""
        if self._closing:
            return
        self._closing = True
        CoreLogger.info("Shutting down")

        if self.watch is not None:
            self.watch.stop_monitoring(timeout=self.shutdown_deadline)
        if self.lifecycle is not None:
            self.lifecycle.shutdown(self.shutdown_deadline)

        waiter = threading.Thread(target=self.executor.shutdown,
                                  kwargs={'wait': True, 'cancel_futures': True},
                                  name="executor-shutdown", daemon=True)
        waiter.start()
        waiter.join(timeout=self.shutdown_deadline)
        if waiter.is_alive():
            CoreLogger.warning(f"Workers still busy after {self.shutdown_deadline}s, abandoning them")

        self._drain()
        CoreLogger.info("Shutdown complete")

    def _drain(self):
        # Spawns that completed after the lifecycle manager was shut down
        while True:
            try:
                event = self.queue.get_nowait()
            except queue.Empty:
                return
            if event.event_type == EventType.PROCESS_STARTED and self.lifecycle is not None:
                self.lifecycle.adopt_late_start(event.data['process'])
