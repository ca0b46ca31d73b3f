"""
Controller Manager — the host reconciliation loop.

Watch streams (one per probe kind) enqueue namespace/name keys. Worker
threads pull keys, run the Reconciliation Adapter and re-add the key after
the delay the adapter returns. The queue never hands one key to two
workers at once, and a key added while in flight is processed again once
the running reconcile finishes.

States:
  WATCHING → ENQUEUED → RECONCILING → (REQUEUED after delay | IDLE)
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

from kubernetes import watch
from kubernetes.client import ApiException

from flux_rollback.models.config import ControllerConfig
from flux_rollback.reconciler.adapter import ReconciliationAdapter, ResourceProbe

logger = logging.getLogger(__name__)

ObjectKey = Tuple[str, str]  # (namespace, name)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RESTART_PAUSE_SECONDS = 5.0
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 60.0
BACKOFF_MAX_EXPONENT = 6  # 2**6 s already exceeds the cap


class DelayingWorkQueue:
    """
    De-duplicating work queue with delayed adds and per-key failure backoff.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._waiting: List[Tuple[float, int, ObjectKey]] = []
        self._waiting_due: Dict[ObjectKey, float] = {}
        self._failures: Dict[ObjectKey, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: ObjectKey) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Add key once delay seconds have passed. An earlier pending due time wins."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self.clock() + delay
            existing = self._waiting_due.get(key)
            if existing is not None and existing <= due:
                return
            self._waiting_due[key] = due
            heapq.heappush(self._waiting, (due, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Re-add after a failed reconcile with exponential backoff; returns the delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(
            BACKOFF_MAX_SECONDS,
            BACKOFF_BASE_SECONDS * (2 ** min(failures, BACKOFF_MAX_EXPONENT)),
        )
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def get(self, timeout: Optional[float] = None) -> Optional[ObjectKey]:
        """
        Next key to process, or None on timeout or shutdown.
        The caller must call done(key) when finished.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                wait = None
                if self._waiting:
                    wait = max(0.0, self._waiting[0][0] - self.clock())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _promote_due_locked(self) -> None:
        now = self.clock()
        while self._waiting and self._waiting[0][0] <= now:
            due, _, key = heapq.heappop(self._waiting)
            if self._waiting_due.get(key) != due:
                continue  # superseded by an earlier add_after
            del self._waiting_due[key]
            self._add_locked(key)


class ControllerManager:
    """
    Runs watch threads and reconcile workers against one adapter.
    """

    def __init__(
        self,
        adapter: ReconciliationAdapter,
        probes: Sequence[ResourceProbe],
        config: ControllerConfig,
        queue: Optional[DelayingWorkQueue] = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ):
        self.adapter = adapter
        self.probes = list(probes)
        self.config = config
        self.queue = queue if queue is not None else DelayingWorkQueue()
        self.watch_factory = watch_factory
        self.watch_restart_pause = WATCH_RESTART_PAUSE_SECONDS

        self._threads: List[threading.Thread] = []
        self._watchers: List[watch.Watch] = []
        self._watcher_lock = threading.Lock()
        self._running = False

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add((namespace, name))

    def handle_event(self, event: dict) -> Optional[ObjectKey]:
        """Turn a watch event into a queued key. DELETED and ERROR events are ignored."""
        if event.get("type") not in ("ADDED", "MODIFIED"):
            return None
        obj = event.get("object") or {}
        metadata = obj.get("metadata") if isinstance(obj, dict) else None
        if not metadata or not metadata.get("name"):
            return None
        key = (metadata.get("namespace", ""), metadata["name"])
        self.queue.add(key)
        return key

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one queued key. Returns False if nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        namespace, name = key
        try:
            result = self.adapter.reconcile(name, namespace)
        except ApiException as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                "Reconcile of %s/%s failed status=%s; retrying in %.0fs",
                namespace, name, e.status, delay,
            )
        except Exception:
            delay = self.queue.add_rate_limited(key)
            logger.exception("Reconcile of %s/%s failed; retrying in %.0fs", namespace, name, delay)
        else:
            self.queue.forget(key)
            if result.requeue_after > 0:
                self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)
        return True

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.queue.shutting_down:
            try:
                self.process_next(timeout=1.0)
            except Exception:
                logger.exception("Reconcile worker error; continuing")

    def _watch_loop(self, probe: ResourceProbe, stop_event: threading.Event) -> None:
        """Stream events for one kind, restarting the watch whenever it ends."""
        func, kwargs = probe.watch_source(self.config.watch_namespace)
        while not stop_event.is_set():
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._watchers.append(watcher)
            try:
                for event in watcher.stream(func, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                    if stop_event.is_set():
                        break
                    self.handle_event(event)
            except ApiException as e:
                if e.status == 410:
                    logger.info("%s watch expired, relisting", probe.kind)
                    continue
                logger.exception("%s watch failed", probe.kind)
                stop_event.wait(self.watch_restart_pause)
            except Exception:
                logger.exception("%s watch stream error", probe.kind)
                stop_event.wait(self.watch_restart_pause)
            finally:
                with self._watcher_lock:
                    if watcher in self._watchers:
                        self._watchers.remove(watcher)

    def start(self, stop_event: threading.Event) -> None:
        """Start watch threads and reconcile workers."""
        self._running = True
        for probe in self.probes:
            t = threading.Thread(
                target=self._watch_loop,
                args=(probe, stop_event),
                name=f"watch-{probe.kind.lower()}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        for i in range(self.config.reconcile_workers):
            t = threading.Thread(
                target=self._worker_loop,
                args=(stop_event,),
                name=f"reconcile-worker-{i}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info(
            "Controller started kinds=%s workers=%d namespace=%s",
            [p.kind for p in self.probes],
            self.config.reconcile_workers,
            self.config.watch_namespace or "<all>",
        )

    def stop(self) -> None:
        self.queue.shutdown()
        with self._watcher_lock:
            for watcher in self._watchers:
                watcher.stop()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads = []
        self._running = False

    def run(self, stop_event: threading.Event) -> None:
        """Block until stop_event is set, then shut everything down."""
        self.start(stop_event)
        try:
            stop_event.wait()
        finally:
            self.stop()
