import logging

import pytest

from cabinet.activity import ActivityLog
from cabinet.attachments import AttachmentService
from cabinet.config import (
    AttachmentConfig,
    CabinetConfig,
    ConfigProvider,
    CrawlingConfig,
    DownloadThrottle,
    FileSystemStorageConfig,
)

from fakes import FakeDatabase, FakeStorage, MemoryJobQueue


@pytest.fixture(autouse=True)
def _quiet_logs(caplog):
    caplog.set_level(logging.INFO, logger="cabinet")


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def queue():
    return MemoryJobQueue()


@pytest.fixture
def storage():
    store = FakeStorage()
    yield store
    store.close()


@pytest.fixture
def make_config(tmp_path):
    def build(*watchers, delete_obsolete=False, watcher_sync="keep", hash_check=False, interval=600000):
        return ConfigProvider.from_config(
            CabinetConfig(
                storage=FileSystemStorageConfig(str(tmp_path / "files"), str(tmp_path / "thumbs")),
                watchers=tuple(watchers),
                attachment=AttachmentConfig(DownloadThrottle(download=5, failover=50), hash_check=hash_check),
                crawling=CrawlingConfig(interval=interval, delete_obsolete=delete_obsolete, watcher_sync=watcher_sync),
            )
        )

    return build


@pytest.fixture
def attachment_service(make_config, db, queue, storage):
    return AttachmentService(make_config(), db, queue, storage=storage)


@pytest.fixture
def activity(db):
    return ActivityLog(db)
