from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .event_logging import StructuredLogEvent, log_structured_event

TASK_JOIN_TIMEOUT_SECONDS = 3.0

_worker_state = threading.local()


def _in_worker_thread() -> bool:
    return bool(getattr(_worker_state, "active", False))


def _log_scheduler_event(
    event: str,
    key: str,
    *,
    result: str,
    failure_reason: str = "-",
    state_before: str = "-",
    state_after: str = "-",
    **context: object,
) -> None:
    log_structured_event(
        StructuredLogEvent(
            component="scheduler",
            event=event,
            input_data=f"key={key}",
            decision="manage_task_lifecycle",
            result=result,
            state_before=state_before,
            state_after=state_after,
            failure_reason=failure_reason,
        ),
        **context,
    )


def _run_guarded(key: str, fn: Callable[[], None]) -> None:
    _worker_state.active = True
    try:
        fn()
    except Exception as exc:
        # A failing tick must not kill its task.
        _log_scheduler_event(
            "task_tick_failed",
            key,
            result="tick_error",
            failure_reason=type(exc).__name__,
            error=repr(exc),
        )


class _PeriodicTask:
    def __init__(self, key: str, interval_seconds: float, fn: Callable[[], None], *, run_immediately: bool) -> None:
        self.key = key
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"task-{self.key}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        # Worker threads never join other workers.
        if thread and thread.is_alive() and threading.current_thread() is not thread and not _in_worker_thread():
            thread.join(timeout=TASK_JOIN_TIMEOUT_SECONDS)
        self._thread = None

    def _run(self) -> None:
        if self._run_immediately and not self._stop_event.is_set():
            _run_guarded(self.key, self._fn)
        while not self._stop_event.wait(self.interval_seconds):
            _run_guarded(self.key, self._fn)


class TaskScheduler:
    """Keyed periodic tasks and one-shot delayed checks.

    Each key owns at most one periodic task and at most one pending timer.
    Stopping a key from inside its own tick is allowed; the thread is then
    left to exit on its own instead of being joined.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, _PeriodicTask] = {}
        self._timers: dict[str, threading.Timer] = {}

    def start_periodic(
        self,
        key: str,
        interval_seconds: float,
        fn: Callable[[], None],
        *,
        run_immediately: bool = False,
    ) -> bool:
        with self._lock:
            if key in self._tasks:
                return False
            task = _PeriodicTask(key, interval_seconds, fn, run_immediately=run_immediately)
            self._tasks[key] = task
        task.start()
        _log_scheduler_event(
            "task_started",
            key,
            result="started",
            state_before="idle",
            state_after="running",
            interval_seconds=task.interval_seconds,
        )
        return True

    def stop(self, key: str) -> bool:
        with self._lock:
            task = self._tasks.pop(key, None)
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if task is None:
            return timer is not None
        task.stop()
        _log_scheduler_event(
            "task_stopped",
            key,
            result="stopped",
            state_before="running",
            state_after="idle",
        )
        return True

    def schedule_once(self, key: str, delay_seconds: float, fn: Callable[[], None]) -> None:
        def _fire() -> None:
            with self._lock:
                if self._timers.get(key) is timer:
                    del self._timers[key]
            _run_guarded(key, fn)

        timer = threading.Timer(max(0.0, float(delay_seconds)), _fire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel_once(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._tasks

    def active_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def stop_all(self) -> None:
        with self._lock:
            keys = set(self._tasks) | set(self._timers)
        for key in sorted(keys):
            self.stop(key)


class ManualScheduler:
    """Deterministic scheduler: nothing runs until the caller ticks it."""

    def __init__(self) -> None:
        self.tasks: dict[str, Callable[[], None]] = {}
        self.intervals: dict[str, float] = {}
        self.timers: dict[str, Callable[[], None]] = {}
        self.timer_delays: dict[str, float] = {}
        self.stopped: list[str] = []

    def start_periodic(
        self,
        key: str,
        interval_seconds: float,
        fn: Callable[[], None],
        *,
        run_immediately: bool = False,
    ) -> bool:
        if key in self.tasks:
            return False
        self.tasks[key] = fn
        self.intervals[key] = float(interval_seconds)
        if run_immediately:
            fn()
        return True

    def stop(self, key: str) -> bool:
        task = self.tasks.pop(key, None)
        self.intervals.pop(key, None)
        timer = self.timers.pop(key, None)
        self.timer_delays.pop(key, None)
        if task is None and timer is None:
            return False
        self.stopped.append(key)
        return True

    def schedule_once(self, key: str, delay_seconds: float, fn: Callable[[], None]) -> None:
        self.timers[key] = fn
        self.timer_delays[key] = float(delay_seconds)

    def cancel_once(self, key: str) -> bool:
        self.timer_delays.pop(key, None)
        return self.timers.pop(key, None) is not None

    def is_active(self, key: str) -> bool:
        return key in self.tasks

    def active_keys(self) -> list[str]:
        return sorted(self.tasks)

    def stop_all(self) -> None:
        for key in sorted(set(self.tasks) | set(self.timers)):
            self.stop(key)

    def tick(self, key: str) -> bool:
        fn = self.tasks.get(key)
        if fn is None:
            return False
        fn()
        return True

    def fire_timer(self, key: str) -> bool:
        fn = self.timers.pop(key, None)
        self.timer_delays.pop(key, None)
        if fn is None:
            return False
        fn()
        return True


class EntityGuard:
    """One exclusive slot per entity id for read-cancel-replace sequences.

    A slot lives only while some thread holds or waits on it, so ids of
    finished baskets and entries do not accumulate.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[str, threading.RLock] = {}
        self._claims: dict[str, int] = {}

    def _claim(self, key: str) -> threading.RLock:
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = threading.RLock()
                self._slots[key] = slot
            self._claims[key] = self._claims.get(key, 0) + 1
            return slot

    def _unclaim(self, key: str) -> None:
        with self._lock:
            remaining = self._claims.get(key, 0) - 1
            if remaining > 0:
                self._claims[key] = remaining
                return
            self._claims.pop(key, None)
            self._slots.pop(key, None)

    @property
    def slot_count(self) -> int:
        with self._lock:
            return len(self._slots)

    @contextmanager
    def hold(self, key: str, *, blocking: bool = True) -> Iterator[bool]:
        slot = self._claim(key)
        try:
            acquired = slot.acquire(blocking=blocking)
            try:
                yield acquired
            finally:
                if acquired:
                    slot.release()
        finally:
            self._unclaim(key)
