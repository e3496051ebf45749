#!/usr/bin/env python3
"""
Tests for the event coordinator, including end-to-end group scenarios
"""

import unittest
import queue
import random
import threading
import time
import sys
import os
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trackdevice.DeviceClassifier import DeviceClassifier
from trackdevice.DeviceModels import DeviceClass, Requirement
from trackjuggler.EventCoordinator import EventCoordinator
from trackjuggler.JugglerConfig import UNCLASSIFIED_NON_MATCHING
from trackjuggler.JugglerEvents import CoordinatorEvent, EventType
from trackjuggler.LifecycleManager import LifecycleManager, ProcessState
from trackjuggler.test_lifecycle_manager import DeferredExecutor, FakeProcess, InlineExecutor
from trackutils.errors import ClassificationUnavailable


class FakeClock:

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def oracle(identifier, generation=None):
    if identifier.endswith("event-mouse"):
        return DeviceClass.MULTITOUCH_TRACKPAD
    return DeviceClass.MOUSE


class CoordinatorTestCase(unittest.TestCase):

    bind_devices = True

    def setUp(self):
        """Set up test fixtures"""
        self.processes = []
        self.clock = FakeClock()
        self.executor = self.create_executor()
        self.classifier = Mock(spec=DeviceClassifier)
        self.classifier.classify.side_effect = oracle

        self.coordinator = EventCoordinator(
            Requirement(min_keyboards=1, min_trackpads=1),
            self.classifier,
            self.executor,
            debounce=1.0,
            clock=self.clock
        )
        watch_patch = patch.object(LifecycleManager, '_watch_exit')
        watch_patch.start()
        self.addCleanup(watch_patch.stop)
        self.lifecycle = LifecycleManager(
            "/etc/trackjoy.json",
            self.coordinator.post,
            self.executor,
            dev_dir="/dev/input/by-path",
            grace_period=0.05,
            bind_devices=self.bind_devices,
            popen=self.spawn
        )
        self.coordinator.attach_lifecycle(self.lifecycle)

    def tearDown(self):
        for process in self.processes:
            if process.returncode is None:
                process.exit(0)

    def create_executor(self):
        return InlineExecutor()

    def spawn(self, argv):
        process = FakeProcess(argv)
        self.processes.append(process)
        return process

    def process_queue(self):
        while True:
            try:
                event = self.coordinator.queue.get_nowait()
            except queue.Empty:
                return
            self.coordinator.handle_event(event)

    def add(self, identifier):
        self.coordinator.post(CoordinatorEvent(EventType.DEVICE_ADDED, identifier=identifier))
        self.process_queue()

    def remove(self, identifier):
        self.coordinator.post(CoordinatorEvent(EventType.DEVICE_REMOVED, identifier=identifier))
        self.process_queue()

    def settle(self):
        """Let the debounce window pass and evaluate dirty groups"""
        self.clock.advance(self.coordinator.debounce)
        self.coordinator.flush_dirty()
        self.process_queue()

    def make_ready(self):
        self.add("usb-1.2-kbd")
        self.add("usb-1.2-event-mouse")
        self.settle()
        return self.processes[-1]


class TestScenarios(CoordinatorTestCase):

    def test_keyboard_and_trackpad_launch_once(self):
        self.add("usb-1.2-kbd")
        self.add("usb-1.2-event-mouse")
        self.classifier.classify.assert_called_once_with("usb-1.2-event-mouse", 1)
        self.assertEqual(self.processes, [])

        self.settle()
        self.assertEqual(len(self.processes), 1)
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.RUNNING)
        self.assertEqual(self.processes[0].argv, [
            "trackjoy", "/etc/trackjoy.json",
            "keys", "/dev/input/by-path/usb-1.2-kbd",
            "pad", "/dev/input/by-path/usb-1.2-event-mouse"])

        self.settle()
        self.assertEqual(len(self.processes), 1)

    def test_removing_keyboard_stops_process(self):
        process = self.make_ready()
        self.remove("usb-1.2-kbd")

        self.assertTrue(process.terminated)
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.IDLE)
        self.settle()
        self.assertEqual(len(self.processes), 1)

    def test_crash_is_reported_without_restart(self):
        process = self.make_ready()
        process.exit(1)
        with self.assertLogs("juggler.process", level="ERROR") as logs:
            self.coordinator.post(CoordinatorEvent(EventType.PROCESS_EXITED, group_key="usb-1.2",
                                                   data={'process': process, 'returncode': 1}))
            self.process_queue()
        self.assertIn("exited unexpectedly", "\n".join(logs.output))
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.IDLE)

        self.settle()
        self.assertEqual(len(self.processes), 1)

        # The next device event into the group re-triggers evaluation
        self.add("usb-1.2-mouse")
        self.settle()
        self.assertEqual(len(self.processes), 2)

    def test_group_purged_while_stopping_is_forgotten(self):
        process = self.make_ready()
        # Both removes land before the stop completion is handled
        self.coordinator.post(CoordinatorEvent(EventType.DEVICE_REMOVED, identifier="usb-1.2-kbd"))
        self.coordinator.post(CoordinatorEvent(EventType.DEVICE_REMOVED, identifier="usb-1.2-event-mouse"))
        self.process_queue()

        self.assertTrue(process.terminated)
        self.assertIsNone(self.coordinator.assembler.get_group("usb-1.2"))
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.IDLE)
        self.assertEqual(self.lifecycle.status(), {})

    def test_garbage_identifier(self):
        with self.assertLogs("juggler.device", level="WARNING"):
            self.add("garbage")
        self.settle()
        self.assertEqual(self.coordinator.assembler.groups, [])
        self.assertEqual(self.processes, [])


class TestDebounce(CoordinatorTestCase):

    def test_adds_rearm_the_window(self):
        self.add("usb-1.2-kbd")
        self.clock.advance(0.8)
        self.add("usb-1.2-event-mouse")
        self.clock.advance(0.8)
        self.assertGreater(self.coordinator._wait_timeout(), 0)

        self.clock.advance(0.3)
        self.assertEqual(self.coordinator._wait_timeout(), 0.0)

    def test_nothing_dirty_waits_idle(self):
        self.assertEqual(self.coordinator._wait_timeout(), 1.0)

    def test_remove_is_evaluated_immediately(self):
        process = self.make_ready()
        self.remove("usb-1.2-event-mouse")
        self.assertTrue(process.terminated)

    def test_readd_after_stop_restarts(self):
        process = self.make_ready()
        self.remove("usb-1.2-kbd")
        self.add("usb-1.2-kbd")
        self.settle()
        self.assertTrue(process.terminated)
        self.assertEqual(len(self.processes), 2)
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.RUNNING)

    def test_state_is_logged_after_flush(self):
        self.add("usb-1.2-kbd")
        with self.assertLogs("juggler.core", level="DEBUG") as logs:
            self.settle()
        output = "\n".join(logs.output)
        self.assertIn("Devices: {'groups': [", output)
        self.assertIn("Processes: {}", output)


class TestClassification(CoordinatorTestCase):

    def test_failure_keeps_group_incomplete_and_retries_on_next_add(self):
        self.classifier.classify.side_effect = ClassificationUnavailable("usb-1.2-event-mouse", "oracle missing")
        with self.assertLogs("juggler.core", level="WARNING"):
            self.add("usb-1.2-event-mouse")
        self.add("usb-1.2-kbd")
        self.settle()
        self.assertEqual(self.processes, [])
        self.assertEqual(self.classifier.classify.call_count, 2)

        self.classifier.classify.side_effect = oracle
        self.add("usb-1.2-mouse")
        self.settle()
        self.assertEqual(len(self.processes), 1)

    def test_non_matching_policy(self):
        self.coordinator.unclassified_policy = UNCLASSIFIED_NON_MATCHING
        self.classifier.classify.side_effect = ClassificationUnavailable("usb-1.2-event-mouse", "timed out")
        self.add("usb-1.2-event-mouse")
        device = self.coordinator.assembler.get_device("usb-1.2-event-mouse")
        self.assertEqual(device.resolved_class, DeviceClass.MOUSE)

    def test_remove_forgets_cached_class(self):
        self.add("usb-1.2-event-mouse")
        self.remove("usb-1.2-event-mouse")
        self.classifier.forget.assert_called_once_with("usb-1.2-event-mouse")

    def test_unexpected_classifier_error_is_reported(self):
        self.classifier.classify.side_effect = RuntimeError("boom")
        with self.assertLogs("juggler.core", level="WARNING"):
            self.add("usb-1.2-event-mouse")
        self.assertEqual(self.coordinator._in_flight, set())


class TestStaleClassification(CoordinatorTestCase):

    def create_executor(self):
        return DeferredExecutor()

    def test_result_for_previous_generation_is_dropped(self):
        self.add("usb-1.2-kbd")
        self.add("usb-1.2-event-mouse")
        self.remove("usb-1.2-event-mouse")
        self.classifier.classify.side_effect = lambda identifier, generation: DeviceClass.MOUSE
        self.add("usb-1.2-event-mouse")

        # First request answers MOUSE for the old record, second answers trackpad
        fn, args, kwargs = self.executor.pending.pop(0)
        fn(*args, **kwargs)
        self.process_queue()
        device = self.coordinator.assembler.get_device("usb-1.2-event-mouse")
        self.assertEqual(device.resolved_class, DeviceClass.UNCLASSIFIED)

        self.classifier.classify.side_effect = oracle
        self.executor.run_all()
        self.process_queue()
        self.assertEqual(device.resolved_class, DeviceClass.MULTITOUCH_TRACKPAD)

    @patch('trackdevice.DeviceClassifier.subprocess.run')
    def test_late_oracle_answer_is_not_reused_after_readd(self, mock_run):
        self.coordinator.classifier = DeviceClassifier(dev_dir="/dev/input/by-path")
        mock_run.return_value = Mock(stdout="multitouch-trackpad\n", stderr="", returncode=0)
        self.add("usb-1.2-kbd")
        self.add("usb-1.2-event-mouse")
        self.remove("usb-1.2-event-mouse")

        # The oracle answers for the removed record only now
        self.executor.run_all()
        self.process_queue()

        mock_run.return_value = Mock(stdout="other\n", stderr="", returncode=0)
        self.add("usb-1.2-event-mouse")
        self.executor.run_all()
        self.process_queue()

        device = self.coordinator.assembler.get_device("usb-1.2-event-mouse")
        self.assertEqual(device.resolved_class, DeviceClass.MOUSE)
        self.assertEqual(mock_run.call_count, 2)
        self.settle()
        self.assertEqual(self.processes, [])


class TestProcessSurvivingKill(CoordinatorTestCase):

    def create_executor(self):
        return DeferredExecutor()

    def spawn(self, argv):
        process = FakeProcess(argv, ignore_terminate=True, ignore_kill=True)
        self.processes.append(process)
        return process

    def run_pending(self):
        self.executor.run_all()
        self.process_queue()

    def test_no_second_launch_until_old_process_is_gone(self):
        self.add("usb-1.2-kbd")
        self.add("usb-1.2-event-mouse")
        self.run_pending()
        self.settle()
        self.run_pending()
        first = self.processes[0]
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.RUNNING)

        self.remove("usb-1.2-kbd")
        with self.assertLogs("juggler.process", level="ERROR"):
            self.run_pending()
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.STOPPING)

        self.add("usb-1.2-kbd")
        self.settle()
        self.assertEqual(len(self.processes), 1)
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.STOPPING)

        # The retried stop reaps it, then the still-ready group launches again
        first.exit(-9)
        self.run_pending()
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.IDLE)
        self.settle()
        self.run_pending()
        self.assertEqual(len(self.processes), 2)
        self.assertEqual(self.lifecycle.state_of("usb-1.2"), ProcessState.RUNNING)


class TestAtMostOneProcess(CoordinatorTestCase):

    bind_devices = False

    def create_executor(self):
        return DeferredExecutor()

    def live_processes(self, key):
        return [p for p in self.processes
                if p.argv[-1] == key and p.returncode is None]

    def test_random_interleavings(self):
        identifiers = ["usb-1.2-kbd", "usb-1.2-event-mouse", "usb-1.2-event",
                       "usb-1.3-kbd", "usb-1.3__pad"]
        rng = random.Random(1234)

        for _ in range(500):
            action = rng.randrange(6)
            if action == 0:
                self.add(rng.choice(identifiers))
            elif action == 1:
                self.remove(rng.choice(identifiers))
            elif action == 2 and self.executor.pending:
                fn, args, kwargs = self.executor.pending.pop(rng.randrange(len(self.executor.pending)))
                fn(*args, **kwargs)
            elif action == 3:
                self.process_queue()
            elif action == 4:
                self.settle()
            elif action == 5:
                running = [k for k in ("usb-1.2", "usb-1.3")
                           if self.lifecycle.state_of(k) == ProcessState.RUNNING]
                if running:
                    key = rng.choice(running)
                    process = self.lifecycle.get_process(key).process
                    if process.returncode is None:
                        process.exit(rng.choice([0, 1]))
                    self.coordinator.post(CoordinatorEvent(
                        EventType.PROCESS_EXITED, group_key=key,
                        data={'process': process, 'returncode': process.returncode}))

            for key in ("usb-1.2", "usb-1.3"):
                self.assertLessEqual(len(self.live_processes(key)), 1)

        self.assertTrue(self.processes)


class TestRunLoop(unittest.TestCase):

    def wait_until(self, predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_run_and_shutdown(self):
        processes = []

        def spawn(argv):
            process = FakeProcess(argv)
            processes.append(process)
            return process

        classifier = Mock(spec=DeviceClassifier)
        classifier.classify.side_effect = oracle
        executor = InlineExecutor()
        coordinator = EventCoordinator(Requirement(1, 1), classifier, executor,
                                       debounce=0.01, shutdown_deadline=1.0)
        lifecycle = LifecycleManager("/etc/trackjoy.json", coordinator.post, executor,
                                     grace_period=0.05, popen=spawn)
        coordinator.attach_lifecycle(lifecycle)
        watch = Mock()
        coordinator.attach_watch(watch)

        thread = threading.Thread(target=coordinator.run, daemon=True)
        thread.start()
        coordinator.post(CoordinatorEvent(EventType.DEVICE_ADDED, identifier="usb-1.2-kbd"))
        coordinator.post(CoordinatorEvent(EventType.DEVICE_ADDED, identifier="usb-1.2-event-mouse"))

        self.assertTrue(self.wait_until(lambda: lifecycle.state_of("usb-1.2") == ProcessState.RUNNING))
        coordinator.stop()
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        self.assertTrue(processes[0].terminated)
        watch.stop_monitoring.assert_called_once()
        self.assertTrue(executor.shut_down)

    def test_late_start_during_shutdown_is_terminated(self):
        coordinator = EventCoordinator(Requirement(1, 1), Mock(spec=DeviceClassifier), InlineExecutor())
        lifecycle = LifecycleManager("/etc/trackjoy.json", coordinator.post, coordinator.executor,
                                     grace_period=0.05)
        coordinator.attach_lifecycle(lifecycle)
        late = FakeProcess(["trackjoy"])
        coordinator.post(CoordinatorEvent(EventType.PROCESS_STARTED, group_key="usb-1.2",
                                          data={'process': late, 'argv': ["trackjoy"]}))
        coordinator.shutdown()
        self.assertTrue(late.terminated)


if __name__ == "__main__":
    unittest.main()
