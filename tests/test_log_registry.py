"""Tests for LogBroadcastRegistry fan-out, replay and retention."""

import threading

from machina.modules.deployments.log_registry import LogBroadcastRegistry
from machina.modules.deployments.schemas import LogRecord


def _record(sequence, deployment_id="dep_1", message=None):
    return LogRecord(
        deployment_id=deployment_id,
        sequence=sequence,
        message=message or f"line {sequence}",
        source="terraform",
    )


class TestReplay:
    def test_late_subscriber_gets_history_then_live(self):
        registry = LogBroadcastRegistry()
        for seq in range(1, 4):
            registry.publish("dep_1", _record(seq))

        seen = []
        registry.subscribe("dep_1", lambda r: seen.append(r.sequence))
        for seq in range(4, 6):
            registry.publish("dep_1", _record(seq))

        assert seen == [1, 2, 3, 4, 5]

    def test_stale_or_duplicate_sequence_is_dropped(self):
        registry = LogBroadcastRegistry()
        seen = []
        registry.subscribe("dep_1", lambda r: seen.append(r.sequence))

        assert registry.publish("dep_1", _record(1)) is True
        assert registry.publish("dep_1", _record(2)) is True
        assert registry.publish("dep_1", _record(2)) is False
        assert registry.publish("dep_1", _record(1)) is False

        assert seen == [1, 2]
        assert [r.sequence for r in registry.history("dep_1")] == [1, 2]

    def test_deployments_are_isolated(self):
        registry = LogBroadcastRegistry()
        seen = []
        registry.subscribe("dep_1", lambda r: seen.append(r.deployment_id))
        registry.publish("dep_2", _record(1, deployment_id="dep_2"))
        registry.publish("dep_1", _record(1))
        assert seen == ["dep_1"]


class TestListeners:
    def test_unsubscribe_handle_stops_delivery(self):
        registry = LogBroadcastRegistry()
        seen = []
        unsubscribe = registry.subscribe("dep_1", lambda r: seen.append(r.sequence))
        registry.publish("dep_1", _record(1))
        unsubscribe()
        registry.publish("dep_1", _record(2))

        assert seen == [1]
        assert registry.listener_count("dep_1") == 0

    def test_failing_listener_is_removed_others_keep_receiving(self):
        registry = LogBroadcastRegistry()
        seen = []

        def broken(record):
            raise RuntimeError("client went away")

        registry.subscribe("dep_1", broken)
        registry.subscribe("dep_1", lambda r: seen.append(r.sequence))

        registry.publish("dep_1", _record(1))
        registry.publish("dep_1", _record(2))

        assert seen == [1, 2]
        assert registry.listener_count("dep_1") == 1


class TestRetention:
    def test_only_newest_retired_buffers_are_kept(self):
        registry = LogBroadcastRegistry(retained_buffers=2)
        for dep in ("dep_a", "dep_b", "dep_c"):
            registry.publish(dep, _record(1, deployment_id=dep))
            registry.retire(dep)

        assert registry.history("dep_a") == []
        assert len(registry.history("dep_b")) == 1
        assert len(registry.history("dep_c")) == 1

    def test_stop_clears_everything(self):
        registry = LogBroadcastRegistry()
        registry.start()
        registry.publish("dep_1", _record(1))
        assert registry.running is True

        registry.stop()
        assert registry.running is False
        assert registry.history("dep_1") == []


class TestConcurrentSubscribers:
    def test_three_subscribers_observe_identical_sequences(self):
        """Subscribers joining while records are published all see the same gap-free stream."""
        registry = LogBroadcastRegistry()
        total = 300
        views = [[], [], []]
        started = threading.Event()

        def publisher():
            for seq in range(1, total + 1):
                registry.publish("dep_1", _record(seq))
                if seq == 50:
                    started.set()

        def subscriber(view):
            started.wait(timeout=5)
            registry.subscribe("dep_1", view.append)

        threads = [threading.Thread(target=publisher)]
        threads += [threading.Thread(target=subscriber, args=(view,)) for view in views]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        expected = list(range(1, total + 1))
        for view in views:
            assert [r.sequence for r in view] == expected
        assert views[0] == views[1] == views[2]
