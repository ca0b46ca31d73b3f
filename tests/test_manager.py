"""Tests for the work queue and Controller Manager."""

import logging
import threading

from kubernetes.client import ApiException

from flux_rollback.models.config import ControllerConfig
from flux_rollback.models.resource import ReconcileResult
from flux_rollback.reconciler.manager import ControllerManager, DelayingWorkQueue


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ScriptedAdapter:
    """Returns queued results (or raises queued exceptions) per reconcile call."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def reconcile(self, name, namespace):
        self.calls.append((namespace, name))
        outcome = self.results.pop(0) if self.results else ReconcileResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeProbe:
    kind = "Kustomization"

    def list_cluster_custom_object(self, **kwargs):
        raise AssertionError("the watch is scripted")

    def watch_source(self, namespace=""):
        return self.list_cluster_custom_object, {
            "group": "kustomize.toolkit.fluxcd.io",
            "version": "v1",
            "plural": "kustomizations",
        }


class ScriptedWatchFactory:
    """
    Builds watchers that replay one scripted stream each. A stream is a list
    of watch events and exceptions to raise in place. Once every stream has
    been replayed the factory either sets stop_event or idles until it is set.
    """

    def __init__(self, streams, stop_event, stop_when_done=True):
        self.streams = list(streams)
        self.stop_event = stop_event
        self.stop_when_done = stop_when_done
        self.calls = []
        self.watchers = []

    def __call__(self):
        watcher = ScriptedWatch(self)
        self.watchers.append(watcher)
        return watcher


class ScriptedWatch:
    def __init__(self, factory):
        self.factory = factory
        self.stopped = False

    def stream(self, func, **kwargs):
        self.factory.calls.append((func, kwargs))
        if not self.factory.streams:
            if self.factory.stop_when_done:
                self.factory.stop_event.set()
            else:
                self.factory.stop_event.wait(0.05)
            return
        for item in self.factory.streams.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item

    def stop(self):
        self.stopped = True


class RecordingAdapter:
    """Thread-safe adapter that signals every reconcile."""

    def __init__(self):
        self.calls = []
        self.reconciled = threading.Event()

    def reconcile(self, name, namespace):
        self.calls.append((namespace, name))
        self.reconciled.set()
        return ReconcileResult()


class FlakyQueue(DelayingWorkQueue):
    """Raises from get() a set number of times before behaving."""

    def __init__(self, clock, errors=1):
        super().__init__(clock=clock)
        self.errors = errors

    def get(self, timeout=None):
        if self.errors:
            self.errors -= 1
            raise RuntimeError("queue state corrupted")
        return super().get(timeout=timeout)


def _event(event_type, namespace, name):
    return {
        "type": event_type,
        "object": {"metadata": {"name": name, "namespace": namespace}},
    }


def _make_manager(results=None):
    clock = FakeClock()
    queue = DelayingWorkQueue(clock=clock)
    adapter = ScriptedAdapter(results)
    manager = ControllerManager(adapter, [], ControllerConfig(), queue=queue)
    return manager, adapter, queue, clock


class TestDelayingWorkQueue:
    def test_add_deduplicates(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        queue.add(("ns", "a"))
        queue.add(("ns", "a"))
        queue.add(("ns", "b"))

        assert len(queue) == 2
        assert queue.get(timeout=0) == ("ns", "a")
        assert queue.get(timeout=0) == ("ns", "b")
        assert queue.get(timeout=0) is None

    def test_key_added_while_processing_is_deferred(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        queue.add(("ns", "a"))
        key = queue.get(timeout=0)

        queue.add(key)
        assert queue.get(timeout=0) is None  # not handed out twice

        queue.done(key)
        assert queue.get(timeout=0) == key

    def test_add_after_waits_for_clock(self):
        clock = FakeClock()
        queue = DelayingWorkQueue(clock=clock)
        queue.add_after(("ns", "a"), 30)

        assert queue.get(timeout=0) is None
        clock.now = 29.9
        assert queue.get(timeout=0) is None
        clock.now = 30
        assert queue.get(timeout=0) == ("ns", "a")

    def test_earlier_add_after_wins(self):
        clock = FakeClock()
        queue = DelayingWorkQueue(clock=clock)
        queue.add_after(("ns", "a"), 30)
        queue.add_after(("ns", "a"), 10)
        queue.add_after(("ns", "a"), 20)

        clock.now = 10
        assert queue.get(timeout=0) == ("ns", "a")
        queue.done(("ns", "a"))

        clock.now = 40
        assert queue.get(timeout=0) is None

    def test_zero_delay_adds_immediately(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        queue.add_after(("ns", "a"), 0)
        assert queue.get(timeout=0) == ("ns", "a")

    def test_backoff_grows_and_resets(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        key = ("ns", "a")

        assert queue.add_rate_limited(key) == 1
        assert queue.add_rate_limited(key) == 2
        assert queue.add_rate_limited(key) == 4
        queue.forget(key)
        assert queue.add_rate_limited(key) == 1

    def test_backoff_is_capped(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        key = ("ns", "a")
        delays = [queue.add_rate_limited(key) for _ in range(12)]
        assert max(delays) == 60

    def test_backoff_survives_huge_failure_count(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        key = ("ns", "a")
        queue._failures[key] = 1100  # 2.0 ** 1100 does not fit in a float

        assert queue.add_rate_limited(key) == 60
        assert queue.add_rate_limited(key) == 60

    def test_empty_queue_is_falsy(self):
        assert not DelayingWorkQueue(clock=FakeClock())

    def test_shutdown_unblocks_get(self):
        queue = DelayingWorkQueue(clock=FakeClock())
        queue.shutdown()
        assert queue.get() is None
        queue.add(("ns", "a"))
        assert len(queue) == 0


class TestControllerManager:
    def test_handle_event_enqueues_key(self):
        manager, _, queue, _ = _make_manager()
        key = manager.handle_event({
            "type": "MODIFIED",
            "object": {"metadata": {"name": "apps", "namespace": "flux-system"}},
        })

        assert key == ("flux-system", "apps")
        assert queue.get(timeout=0) == ("flux-system", "apps")

    def test_handle_event_ignores_deletes_and_errors(self):
        manager, _, queue, _ = _make_manager()
        obj = {"metadata": {"name": "apps", "namespace": "flux-system"}}

        assert manager.handle_event({"type": "DELETED", "object": obj}) is None
        assert manager.handle_event({"type": "ERROR", "object": {"code": 410}}) is None
        assert len(queue) == 0

    def test_requeues_after_returned_delay(self):
        manager, adapter, queue, clock = _make_manager([
            ReconcileResult(requeue_after=15),
            ReconcileResult(),
        ])
        manager.enqueue("flux-system", "apps")

        assert manager.process_next(timeout=0) is True
        assert manager.process_next(timeout=0) is False

        clock.now = 15
        assert manager.process_next(timeout=0) is True
        assert adapter.calls == [("flux-system", "apps")] * 2

        clock.now = 1000
        assert manager.process_next(timeout=0) is False

    def test_no_requeue_when_delay_is_zero(self):
        manager, _, queue, clock = _make_manager([ReconcileResult()])
        manager.enqueue("default", "podinfo")
        manager.process_next(timeout=0)

        clock.now = 10_000
        assert queue.get(timeout=0) is None

    def test_api_error_is_retried_with_backoff(self):
        manager, adapter, _, clock = _make_manager([
            ApiException(status=500, reason="Internal"),
            ReconcileResult(),
        ])
        manager.enqueue("default", "podinfo")

        assert manager.process_next(timeout=0) is True
        assert manager.process_next(timeout=0) is False

        clock.now = 1
        assert manager.process_next(timeout=0) is True
        assert len(adapter.calls) == 2

    def test_unexpected_error_does_not_escape(self):
        manager, adapter, _, clock = _make_manager([RuntimeError("bad object")])
        manager.enqueue("default", "podinfo")

        assert manager.process_next(timeout=0) is True
        clock.now = 1
        assert manager.process_next(timeout=0) is True
        assert len(adapter.calls) == 2

    def test_status(self):
        manager, _, _, _ = _make_manager()
        assert manager.status == "stopped"

    def test_injected_empty_queue_is_used(self):
        clock = FakeClock()
        queue = DelayingWorkQueue(clock=clock)
        manager = ControllerManager(ScriptedAdapter(), [], ControllerConfig(), queue=queue)

        assert manager.queue is queue
        manager.handle_event(_event("ADDED", "flux-system", "apps"))
        assert queue.get(timeout=0) == ("flux-system", "apps")

    def test_long_failing_key_keeps_being_retried(self):
        manager, adapter, queue, clock = _make_manager([
            ApiException(status=500, reason="Internal"),
            ReconcileResult(),
        ])
        queue._failures[("default", "podinfo")] = 1100
        manager.enqueue("default", "podinfo")

        assert manager.process_next(timeout=0) is True

        clock.now = 59
        assert manager.process_next(timeout=0) is False
        clock.now = 60
        assert manager.process_next(timeout=0) is True
        assert len(adapter.calls) == 2

    def test_worker_survives_unexpected_error(self, caplog):
        stop_event = threading.Event()
        clock = FakeClock()
        queue = FlakyQueue(clock)

        class StoppingAdapter(ScriptedAdapter):
            def reconcile(self, name, namespace):
                stop_event.set()
                return super().reconcile(name, namespace)

        adapter = StoppingAdapter()
        manager = ControllerManager(adapter, [], ControllerConfig(), queue=queue)
        manager.enqueue("default", "podinfo")

        with caplog.at_level(logging.ERROR, logger="flux_rollback"):
            manager._worker_loop(stop_event)

        assert adapter.calls == [("default", "podinfo")]
        assert any("Reconcile worker error" in r.getMessage() for r in caplog.records)


class TestWatchLoop:
    def _manager(self, streams, stop_event):
        factory = ScriptedWatchFactory(streams, stop_event)
        queue = DelayingWorkQueue(clock=FakeClock())
        manager = ControllerManager(
            ScriptedAdapter(), [FakeProbe()], ControllerConfig(),
            queue=queue, watch_factory=factory,
        )
        manager.watch_restart_pause = 0
        return manager, factory, queue

    def _drain(self, queue):
        keys = []
        while True:
            key = queue.get(timeout=0)
            if key is None:
                return keys
            keys.append(key)
            queue.done(key)

    def test_events_are_queued(self):
        stop_event = threading.Event()
        manager, factory, queue = self._manager([[
            _event("ADDED", "flux-system", "apps"),
            _event("DELETED", "flux-system", "gone"),
            _event("MODIFIED", "default", "podinfo"),
        ]], stop_event)

        manager._watch_loop(FakeProbe(), stop_event)

        assert self._drain(queue) == [("flux-system", "apps"), ("default", "podinfo")]
        func, kwargs = factory.calls[0]
        assert kwargs["timeout_seconds"] == 300
        assert kwargs["plural"] == "kustomizations"

    def test_expired_watch_relists(self, caplog):
        stop_event = threading.Event()
        manager, factory, queue = self._manager([
            [_event("ADDED", "flux-system", "apps"), ApiException(status=410, reason="Gone")],
            [_event("ADDED", "flux-system", "infra")],
        ], stop_event)

        with caplog.at_level(logging.INFO, logger="flux_rollback"):
            manager._watch_loop(FakeProbe(), stop_event)

        assert self._drain(queue) == [("flux-system", "apps"), ("flux-system", "infra")]
        assert len(factory.calls) == 3  # two scripted streams plus the stopping one
        relists = [r for r in caplog.records if "watch expired, relisting" in r.getMessage()]
        assert len(relists) == 1
        assert relists[0].levelno == logging.INFO

    def test_watch_restarts_after_errors(self, caplog):
        stop_event = threading.Event()
        manager, factory, queue = self._manager([
            [ApiException(status=500, reason="Internal")],
            [RuntimeError("connection reset")],
            [_event("MODIFIED", "default", "podinfo")],
        ], stop_event)

        with caplog.at_level(logging.ERROR, logger="flux_rollback"):
            manager._watch_loop(FakeProbe(), stop_event)

        assert self._drain(queue) == [("default", "podinfo")]
        messages = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert "Kustomization watch failed" in messages
        assert "Kustomization watch stream error" in messages

    def test_finished_watchers_are_released(self):
        stop_event = threading.Event()
        manager, factory, _ = self._manager([[ApiException(status=410, reason="Gone")]], stop_event)

        manager._watch_loop(FakeProbe(), stop_event)

        assert len(factory.watchers) == 2
        assert manager._watchers == []


class TestRun:
    def test_run_reconciles_watched_events_until_stopped(self):
        stop_event = threading.Event()
        factory = ScriptedWatchFactory(
            [[_event("MODIFIED", "flux-system", "apps")]],
            stop_event,
            stop_when_done=False,
        )
        adapter = RecordingAdapter()
        manager = ControllerManager(
            adapter, [FakeProbe()], ControllerConfig(reconcile_workers=1),
            watch_factory=factory,
        )

        runner = threading.Thread(target=manager.run, args=(stop_event,))
        runner.start()
        try:
            assert adapter.reconciled.wait(timeout=5)
            assert manager.status == "running"
        finally:
            stop_event.set()
            runner.join(timeout=15)

        assert not runner.is_alive()
        assert manager.status == "stopped"
        assert manager.queue.shutting_down
        assert adapter.calls == [("flux-system", "apps")]

    def test_stop_stops_active_watchers(self):
        manager, _, _, _ = _make_manager()
        stop_event = threading.Event()
        factory = ScriptedWatchFactory([], stop_event)
        watcher = factory()
        manager._watchers.append(watcher)

        manager.stop()

        assert watcher.stopped
        assert manager.status == "stopped"
