import threading

from cabinet.jobs import QueueWorker

from fakes import MemoryJobQueue


def test_successful_jobs_are_completed():
    queue = MemoryJobQueue()
    queue.enqueue("download", {"n": 1})
    seen = []
    worker = QueueWorker(queue, lambda name, payload: seen.append((name, payload)))

    assert worker.process_next() is True
    assert worker.process_next() is False
    assert seen == [("download", {"n": 1})]
    assert [j.payload for j in queue.completed] == [{"n": 1}]


def test_failed_jobs_reach_the_failure_hooks():
    queue = MemoryJobQueue()
    queue.enqueue("download", {})
    failures = []

    def handler(name, payload):
        raise RuntimeError("broken file")

    worker = QueueWorker(queue, handler)
    worker.on_failed(lambda job, error: failures.append((job.name, str(error))))

    worker.process_next()

    assert failures == [("download", "broken file")]
    assert queue.completed == []
    assert len(queue.failed) == 1


def test_bulk_enqueue_and_drain():
    queue = MemoryJobQueue()
    queue.enqueue_bulk(("deletion", {"attachment_id": str(i)}) for i in range(3))
    handled = []
    worker = QueueWorker(queue, lambda name, payload: handled.append(payload["attachment_id"]))

    assert worker.drain() == 3
    assert handled == ["0", "1", "2"]


def test_background_workers_drain_the_queue():
    queue = MemoryJobQueue()
    for i in range(5):
        queue.enqueue("download", {"n": i})
    done = threading.Event()
    handled = []

    def handler(name, payload):
        handled.append(payload["n"])
        if len(handled) == 5:
            done.set()

    worker = QueueWorker(queue, handler, concurrency=1, poll_interval=0.01)
    worker.start()
    assert done.wait(5)
    worker.stop(5)

    assert sorted(handled) == [0, 1, 2, 3, 4]
