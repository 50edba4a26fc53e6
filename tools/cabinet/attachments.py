"""Attachment pipeline – persist attachment rows, download and delete their files."""

from __future__ import annotations

import logging
import time
from typing import Iterable

from rich.filesize import decimal as filesize

from .activity import ActivityLog
from .config import ConfigProvider
from .db import Database
from .errors import DownloadError, JobError
from .jobs import JobQueue
from .models import RawAttachment, Watcher
from .storage import BaseStorage, create_storage

logger = logging.getLogger("cabinet.attachments")

DOWNLOAD_JOB = "download"
DELETION_JOB = "deletion"


class AttachmentService:
    """Owns the storage backend and feeds the attachment job queue."""

    def __init__(self, config: ConfigProvider, db: Database, queue: JobQueue,
                 storage: BaseStorage | None = None) -> None:
        self.config = config
        self.db = db
        self.queue = queue
        self._storage = storage

    @property
    def storage(self) -> BaseStorage:
        if self._storage is None:
            raise RuntimeError("Attachment storage is not initialized")
        return self._storage

    def initialize(self) -> None:
        if self._storage is None:
            self._storage = create_storage(self.config.storage)
        self._storage.initialize()
        logger.info("Successfully initialized '%s' storage", self._storage.name)

    def save(self, attachment: RawAttachment, watchers: Iterable[Watcher] = ()) -> None:
        """Upsert the row, then queue the download; the file arrives later."""
        self.db.upsert_attachment(attachment, watcher_ids=[w.id for w in watchers])
        self.queue.enqueue(DOWNLOAD_JOB, {"attachment": attachment.to_dict()})

    def save_many(self, attachments: Iterable[RawAttachment], watcher_map: dict[str, list[Watcher]]) -> None:
        for attachment in attachments:
            self.save(attachment, watcher_map.get(attachment.unique_id, []))

    def clean_up_many(self, attachment_ids: Iterable[str]) -> None:
        self.queue.enqueue_bulk((DELETION_JOB, {"attachment_id": aid}) for aid in attachment_ids)

    def close(self) -> None:
        if self._storage is not None:
            self._storage.close()


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    return code if isinstance(code, int) else None


def _describe(attachment: RawAttachment) -> str:
    info = f"'{attachment.file_name}'"
    if attachment.size:
        info += f" ({filesize(attachment.size)})"
    return info


class AttachmentProcessor:
    """Job handler for the attachment queue."""

    def __init__(self, config: ConfigProvider, service: AttachmentService, activity: ActivityLog) -> None:
        self.config = config
        self.service = service
        self.activity = activity

    @property
    def storage(self) -> BaseStorage:
        return self.service.storage

    def check_should_download(self, attachment: RawAttachment) -> bool:
        entity = self.service.db.get_attachment(attachment.unique_id)

        if attachment.thumbnail and attachment.thumbnail.url:
            if not entity or not entity.thumbnail_file_uri:
                return True
            if not self.storage.exists(entity.thumbnail_file_uri):
                return True

        if not entity or not entity.file_uri:
            return True
        if not self.storage.exists(entity.file_uri):
            return True

        if self.config.attachment.hash_check:
            if not entity.hash:
                # nothing to verify against, trust the file we have
                return False
            if entity.hash != self.storage.get_hash_of(entity.file_uri):
                return True

        return False

    def process_download(self, attachment: RawAttachment) -> None:
        if not self.check_should_download(attachment):
            return

        uid = attachment.unique_id
        throttle = self.config.attachment.download_throttle
        result = {
            "attachment_id": uid,
            "name": attachment.name,
            "width": attachment.width,
            "height": attachment.height,
            "extension": attachment.extension,
            "file_size": attachment.size,
        }
        activity = None
        started = time.monotonic()
        retry_count = 0

        try:
            activity = self.activity.start_activity(f"attachment-download:{uid}")
            while True:
                try:
                    saved = self.storage.save(attachment)
                except DownloadError as exc:
                    if exc.status_code != 429:
                        raise
                    retry_count += 1
                    logger.warning(
                        "Failed to download file %s with error code 429 (Too Many Requests), retry count: %d",
                        _describe(attachment), retry_count,
                    )
                    time.sleep(throttle.failover / 1000)
                    continue

                self.service.db.update_attachment_files(
                    uid, file_uri=saved.file_uri, thumbnail_file_uri=saved.thumbnail_uri, mime=saved.mime
                )
                logger.info("Successfully downloaded file %s", _describe(attachment))
                self.activity.finish_activity(
                    activity.id,
                    is_success=True,
                    result={
                        **result,
                        "mime_type": saved.mime,
                        "download_duration_ms": int((time.monotonic() - started) * 1000),
                        "file_uri": saved.file_uri,
                        "thumbnail_generated": bool(saved.thumbnail_uri),
                        "retry_count": retry_count,
                    },
                )
                time.sleep(throttle.download / 1000)
                break
        except Exception as exc:
            if activity is not None:
                self.activity.finish_activity(
                    activity.id,
                    is_success=False,
                    error_message=str(exc),
                    result={
                        **result,
                        "download_duration_ms": int((time.monotonic() - started) * 1000),
                        "thumbnail_generated": False,
                        "retry_count": retry_count,
                        "http_status_code": _status_code(exc),
                    },
                )
            logger.error("Downloading attachment %s failed with error: %s", _describe(attachment), exc)
            raise

    def process_deletion(self, attachment_id: str) -> None:
        entity = self.service.db.get_attachment(attachment_id)
        if entity is None:
            return
        self.storage.delete(file_uri=entity.file_uri, thumbnail_uri=entity.thumbnail_file_uri)
        self.service.db.delete_attachment(attachment_id)
        logger.info("Successfully deleted attachment: %s", attachment_id)

    def process(self, name: str, payload: dict) -> None:
        if name == DOWNLOAD_JOB:
            if "attachment" not in payload:
                raise JobError("Download job without an attachment payload")
            self.process_download(RawAttachment.from_dict(payload["attachment"]))
        elif name == DELETION_JOB:
            if "attachment_id" not in payload:
                raise JobError("Deletion job without an attachment id")
            self.process_deletion(payload["attachment_id"])
        else:
            raise JobError(f"Unsupported job: {name}")

    def on_failed(self, job, error: BaseException) -> None:
        logger.error("Attachment processing task %s failed: %s", job.id, error, exc_info=error)
