import pytest

from cabinet import attachments as attachments_module
from cabinet.attachments import AttachmentProcessor
from cabinet.errors import DownloadError, JobError
from cabinet.models import Watcher

from fakes import make_attachment, make_board


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(attachments_module.time, "sleep", calls.append)
    return calls


@pytest.fixture
def processor(make_config, attachment_service, activity):
    return AttachmentProcessor(make_config(), attachment_service, activity)


@pytest.fixture
def attachment():
    return make_attachment(make_board("g"), 1_700_000_000_123, "abc==")


def test_save_upserts_row_and_queues_download(attachment_service, db, queue, attachment):
    watcher = Watcher(id=3, name="w", type="four-chan")

    attachment_service.save(attachment, [watcher])

    assert attachment.unique_id in db.attachments
    assert (attachment.unique_id, 3) in db.attachment_watchers
    assert queue.pending[0].name == "download"
    assert queue.pending[0].payload["attachment"]["url"] == attachment.url


def test_skip_when_files_exist_and_hash_check_disabled(processor, attachment_service, db, storage, attachment):
    attachment_service.save(attachment)
    db.update_attachment_files(
        attachment.unique_id, file_uri="mem://f", thumbnail_file_uri="mem://t", mime="image/png"
    )
    storage.files.update({"mem://f": b"drifted", "mem://t": b"thumb"})

    assert processor.check_should_download(attachment) is False


def test_download_needed_when_thumbnail_missing(processor, attachment_service, db, storage, attachment):
    attachment_service.save(attachment)
    db.update_attachment_files(attachment.unique_id, file_uri="mem://f", thumbnail_file_uri="mem://t", mime="x")
    storage.files["mem://f"] = b"data"

    assert processor.check_should_download(attachment) is True


def test_hash_check_compares_stored_hash(make_config, attachment_service, activity, db, storage, attachment):
    processor = AttachmentProcessor(make_config(hash_check=True), attachment_service, activity)
    attachment_service.save(attachment)
    db.update_attachment_files(attachment.unique_id, file_uri="mem://f", thumbnail_file_uri="mem://t", mime="x")
    storage.files.update({"mem://f": b"data", "mem://t": b"thumb"})

    # FakeStorage reports "stored-hash", the row says "abc=="
    assert processor.check_should_download(attachment) is True

    db.attachments[attachment.unique_id].hash = None
    assert processor.check_should_download(attachment) is False


def test_rate_limited_download_retries_until_success(processor, attachment_service, db, storage, sleeps, attachment):
    attachment_service.save(attachment)
    too_many = DownloadError("Too Many Requests", 429)
    storage.outcomes = [too_many, too_many, None]

    processor.process_download(attachment)

    assert storage.save_calls == 3
    assert sleeps == [0.05, 0.05, 0.005]
    row = db.attachments[attachment.unique_id]
    assert row.file_uri == f"mem://files/{attachment.file_name}"
    assert row.thumbnail_file_uri is not None
    assert row.mime == "image/png"

    log = db.activities_of(f"attachment-download:{attachment.unique_id}")[0]
    assert log["is_success"]
    assert log["result"]["retry_count"] == 2
    assert log["result"]["thumbnail_generated"] is True


def test_other_download_errors_propagate(processor, attachment_service, db, storage, sleeps, attachment):
    attachment_service.save(attachment)
    storage.outcomes = [DownloadError("Not Found", 404)]

    with pytest.raises(DownloadError):
        processor.process_download(attachment)

    log = db.activities_of(f"attachment-download:{attachment.unique_id}")[0]
    assert not log["is_success"]
    assert log["result"]["http_status_code"] == 404
    assert log["error_message"] == "Not Found"
    assert sleeps == []


def test_deletion_removes_files_then_row(processor, attachment_service, db, storage, attachment):
    attachment_service.save(attachment)
    db.update_attachment_files(attachment.unique_id, file_uri="mem://f", thumbnail_file_uri="mem://t", mime="x")
    storage.files.update({"mem://f": b"data", "mem://t": b"thumb"})

    processor.process("deletion", {"attachment_id": attachment.unique_id})

    assert storage.deleted == ["mem://f", "mem://t"]
    assert attachment.unique_id not in db.attachments


def test_deletion_of_unknown_attachment_is_a_no_op(processor, storage):
    processor.process_deletion("nope")
    assert storage.deleted == []


def test_download_job_round_trips_the_payload(processor, attachment_service, queue, db, sleeps, attachment):
    attachment_service.save(attachment)
    job = queue.dequeue()

    processor.process(job.name, job.payload)

    assert db.attachments[attachment.unique_id].file_uri is not None


def test_unknown_jobs_are_rejected(processor):
    with pytest.raises(JobError):
        processor.process("transcode", {})
    with pytest.raises(JobError):
        processor.process("download", {})
