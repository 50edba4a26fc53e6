"""Wiring – build every cabinet service from one configuration."""

from __future__ import annotations

import logging

from .activity import ActivityLog
from .attachments import AttachmentProcessor, AttachmentService
from .collector import ObsoleteEntityCollector
from .config import ConfigProvider, DatabaseConfig
from .db import Database
from .jobs import PostgresJobQueue, QueueWorker
from .orchestrator import CrawlOrchestrator
from .watchers import WatcherService

logger = logging.getLogger("cabinet.app")


class Cabinet:
    """Owns the database connections, storage, orchestrator and attachment workers.

    Crawling and the attachment workers use separate connections so that a
    worker statement never lands inside a crawl transaction.
    """

    def __init__(self, config: ConfigProvider, db_cfg: DatabaseConfig | None = None) -> None:
        self.config = config
        self.db = Database(db_cfg)
        self.worker_db = Database(db_cfg)

        self.queue = PostgresJobQueue(self.db)
        self.attachments = AttachmentService(config, self.db, self.queue)
        self.activity = ActivityLog(self.db)
        self.watchers = WatcherService(self.db)
        self.orchestrator = CrawlOrchestrator(
            config,
            self.db,
            self.watchers,
            self.attachments,
            self.activity,
            ObsoleteEntityCollector(self.db, self.watchers, self.attachments),
        )
        self._worker: QueueWorker | None = None

    def initialize(self, *, schedule: bool = False) -> None:
        self.db.migrate()
        self.attachments.initialize()
        self.orchestrator.initialize(schedule=schedule)

    def create_worker(self) -> QueueWorker:
        """Attachment workers on their own connection, sharing the storage backend."""
        if self._worker is not None:
            return self._worker
        queue = PostgresJobQueue(self.worker_db)
        queue.recover()
        service = AttachmentService(self.config, self.worker_db, queue, storage=self.attachments.storage)
        processor = AttachmentProcessor(self.config, service, ActivityLog(self.worker_db))
        qcfg = self.config.config.queue
        worker = QueueWorker(queue, processor.process, concurrency=qcfg.concurrency, poll_interval=qcfg.poll_interval)
        worker.on_failed(processor.on_failed)
        self._worker = worker
        return worker

    def close(self) -> None:
        self.orchestrator.shutdown()
        if self._worker is not None:
            self._worker.stop()
        self.attachments.close()
        self.worker_db.close()
        self.db.close()

    def __enter__(self) -> Cabinet:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
