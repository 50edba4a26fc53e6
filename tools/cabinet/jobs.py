"""Persistent job queue and the worker pool that drains it."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from psycopg.types.json import Jsonb

from .db import Database

logger = logging.getLogger("cabinet.jobs")


@dataclass
class Job:
    id: int
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


JobHandler = Callable[[str, dict], None]
FailedHook = Callable[[Job, BaseException], None]


class JobQueue(ABC):
    @abstractmethod
    def enqueue(self, name: str, payload: dict[str, Any]) -> None:
        ...

    def enqueue_bulk(self, jobs: Iterable[tuple[str, dict[str, Any]]]) -> None:
        for name, payload in jobs:
            self.enqueue(name, payload)

    @abstractmethod
    def dequeue(self) -> Job | None:
        ...

    @abstractmethod
    def complete(self, job: Job) -> None:
        ...

    @abstractmethod
    def fail(self, job: Job, error: BaseException) -> None:
        ...


class PostgresJobQueue(JobQueue):
    """Jobs live in the ``jobs`` table; workers claim them with SKIP LOCKED."""

    def __init__(self, db: Database, queue: str = "attachment") -> None:
        self.db = db
        self.queue = queue

    def enqueue(self, name: str, payload: dict[str, Any]) -> None:
        self.db.conn.execute(
            "INSERT INTO jobs (queue, name, payload) VALUES (%s, %s, %s)",
            (self.queue, name, Jsonb(payload)),
        )

    def enqueue_bulk(self, jobs: Iterable[tuple[str, dict[str, Any]]]) -> None:
        rows = [(self.queue, name, Jsonb(payload)) for name, payload in jobs]
        if not rows:
            return
        with self.db.conn.transaction(), self.db.conn.cursor() as cur:
            cur.executemany("INSERT INTO jobs (queue, name, payload) VALUES (%s, %s, %s)", rows)

    def dequeue(self) -> Job | None:
        row = self.db.conn.execute(
            """UPDATE jobs SET status = 'active', attempts = attempts + 1, updated_at = NOW()
               WHERE id = (
                   SELECT id FROM jobs
                   WHERE queue = %s AND status = 'pending'
                   ORDER BY id
                   FOR UPDATE SKIP LOCKED
                   LIMIT 1
               )
               RETURNING id, name, payload, attempts""",
            (self.queue,),
        ).fetchone()
        if row is None:
            return None
        return Job(id=row["id"], name=row["name"], payload=row["payload"], attempts=row["attempts"])

    def complete(self, job: Job) -> None:
        self.db.conn.execute("DELETE FROM jobs WHERE id = %s", (job.id,))

    def fail(self, job: Job, error: BaseException) -> None:
        self.db.conn.execute(
            "UPDATE jobs SET status = 'failed', last_error = %s, updated_at = NOW() WHERE id = %s",
            (str(error), job.id),
        )

    def recover(self) -> int:
        """Hand jobs abandoned by a dead worker back to the queue."""
        count = self.db.conn.execute(
            "UPDATE jobs SET status = 'pending', updated_at = NOW() WHERE queue = %s AND status = 'active'",
            (self.queue,),
        ).rowcount
        if count:
            logger.warning("Recovered %d interrupted %s jobs", count, self.queue)
        return count

    def counts(self) -> dict[str, int]:
        rows = self.db.conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs WHERE queue = %s GROUP BY status", (self.queue,)
        ).fetchall()
        return {r["status"]: r["n"] for r in rows}


class QueueWorker:
    """Pool of threads pulling jobs and handing them to ``handler(name, payload)``."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._failed_hooks: list[FailedHook] = []
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def on_failed(self, hook: FailedHook) -> None:
        self._failed_hooks.append(hook)

    def process_next(self) -> bool:
        """Run a single job if one is pending.  Returns False when the queue is empty."""
        job = self.queue.dequeue()
        if job is None:
            return False
        try:
            self.handler(job.name, job.payload)
        except Exception as exc:
            self.queue.fail(job, exc)
            for hook in self._failed_hooks:
                hook(job, exc)
        else:
            self.queue.complete(job)
        return True

    def drain(self) -> int:
        """Process jobs on the calling thread until the queue is empty."""
        count = 0
        while self.process_next():
            count += 1
        return count

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                busy = self.process_next()
            except Exception:
                logger.exception("Queue worker failed to fetch a job")
                busy = False
            if not busy:
                self._stop.wait(self.poll_interval)

    def start(self) -> None:
        self._stop.clear()
        for i in range(self.concurrency):
            t = threading.Thread(target=self._run, name=f"queue-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Started %d queue worker(s)", self.concurrency)

    def stop(self, timeout: float | None = None) -> None:
        """Stop taking new jobs and wait for running ones to finish."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
