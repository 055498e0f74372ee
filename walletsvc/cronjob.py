"""Periodic jobs, each guarded by a lock so only one instance runs it at a time."""

from __future__ import annotations

import contextvars
import logging
import threading
import time
import uuid
from collections.abc import Callable

from .service import request_context

log = logging.getLogger(__name__)


class MemoryLockStore:
    """Keys that expire after a time to live, held in memory."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def set_nx(self, key: str, value: str, ttl: float) -> bool:
        """Set a key unless it is already set; return whether it was set."""
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + ttl)
            return True

    def get(self, key: str) -> str | None:
        """Return a key's value, or None if it is unset or expired."""
        with self._lock:
            entry = self._live(key)
            return None if entry is None else entry[0]

    def delete(self, key: str) -> bool:
        """Remove a key; return whether it was set."""
        with self._lock:
            if self._live(key) is None:
                return False
            del self._entries[key]
            return True


def run_job(
    job: Callable[[threading.Event], None],
    make_key: Callable[[], str],
    max_duration: float,
    store: MemoryLockStore,
) -> bool:
    """Run a job once under a lock, for at most max_duration seconds.

    The job receives an event that is set when its time runs out. Returns
    False when another run holds the lock and the job was skipped.
    """
    job_id = str(uuid.uuid4())
    name = getattr(job, "__qualname__", repr(job))
    log.info("[cronjob] start %s (%s)", name, job_id)
    key = "cronjob:" + make_key()

    if not store.set_nx(key, job_id, max_duration):
        log.info("[cronjob] key already exists: %s", key)
        return False

    cancelled = threading.Event()

    def target() -> None:
        try:
            job(cancelled)
        except Exception:
            log.exception("[cronjob] %s error", key)

    with request_context(request_id=job_id):
        context = contextvars.copy_context()
    worker = threading.Thread(target=context.run, args=(target,), daemon=True)
    worker.start()
    worker.join(max_duration)
    if worker.is_alive():
        cancelled.set()
        log.error("[cronjob] %s timed out after %s seconds", key, max_duration)

    if store.get(key) == job_id:
        store.delete(key)
    return True


class CronScheduler:
    """Runs jobs repeatedly, each at its own interval, on background threads."""

    def __init__(self) -> None:
        self._jobs: list[tuple[float, Callable[[], None]]] = []
        self._threads: list[threading.Thread] = []
        self._stopping = threading.Event()
        self._started = False

    def add(self, interval: float, job: Callable[[], None]) -> None:
        """Run job every interval seconds; a job added after start begins at once."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._jobs.append((interval, job))
        if self._started:
            self._launch(interval, job)

    def start(self) -> None:
        """Start running the jobs without blocking."""
        if self._started:
            raise RuntimeError("scheduler already started")
        self._started = True
        for interval, job in self._jobs:
            self._launch(interval, job)

    def stop(self) -> None:
        """Stop all jobs and wait for any running one to finish."""
        self._stopping.set()
        for thread in self._threads:
            thread.join()

    def _launch(self, interval: float, job: Callable[[], None]) -> None:
        thread = threading.Thread(target=self._loop, args=(interval, job), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _loop(self, interval: float, job: Callable[[], None]) -> None:
        while not self._stopping.wait(interval):
            try:
                job()
            except Exception:
                log.exception("[cronjob] scheduled job failed")


def cron() -> CronScheduler:
    """Start the service's scheduler and return it."""
    scheduler = CronScheduler()
    scheduler.start()
    return scheduler