from cabinet.collector import ObsoleteEntityCollector, find_obsolete_entities, pluralize
from cabinet.crawlers import ArchivedThreadCache, FourChanCrawler
from cabinet.models import AttachmentNode, PostNode, ThreadNode, Watcher, WatcherThread
from cabinet.watchers import WatcherService

from fakes import FakeProvider, entry, make_attachment, make_board, make_post, make_thread, watcher_config


def crawler_for(*entries):
    cfg = watcher_config("w", *entries)
    return FourChanCrawler(cfg, Watcher(1, "w", "four-chan"), ArchivedThreadCache(), provider=FakeProvider())


def node(tid, title="thread", archived=True, watcher_ids=(), pins=(), posts=(), attachments=()):
    return ThreadNode(
        id=tid, board_code="g", title=title, content=None, is_archived=archived,
        watcher_ids=list(watcher_ids), watcher_threads=list(pins),
        posts=list(posts), attachments=list(attachments),
    )


def test_thread_excluded_by_its_only_watcher_is_obsolete():
    thread = node("t1", title="linux", archived=False, watcher_ids=[1])
    found = find_obsolete_entities([thread], {1: {"t1"}}, [crawler_for(entry(["g"], "linux"))])
    assert [t.id for t in found.threads] == ["t1"]


def test_thread_still_wanted_by_another_watcher_survives_exclusion():
    thread = node("t1", title="linux", archived=False, watcher_ids=[1, 2])
    found = find_obsolete_entities([thread], {1: {"t1"}}, [])
    assert not found


def test_thread_without_watchers_is_not_collected_by_exclusion():
    thread = node("t1", title="phones", archived=False)
    assert not find_obsolete_entities([thread], {1: {"t1"}}, [])


def test_thread_without_watchers_is_still_collected_once_stale():
    thread = node("t1", title="phones")
    found = find_obsolete_entities([thread], {1: {"t1"}}, [crawler_for(entry(["g"], "linux"))])
    assert [t.id for t in found.threads] == ["t1"]


def test_archived_unmatched_unpinned_thread_is_obsolete():
    thread = node("t1", title="phones", watcher_ids=[1])
    found = find_obsolete_entities([thread], {}, [crawler_for(entry(["g"], "linux"))])
    assert [t.id for t in found.threads] == ["t1"]


def test_archived_thread_still_matched_survives():
    thread = node("t1", title="linux", watcher_ids=[1])
    assert not find_obsolete_entities([thread], {}, [crawler_for(entry(["g"], "linux"))])


def test_live_pin_keeps_archived_thread():
    pin = WatcherThread(id=1, url="u", watcher_id=1, thread_id="t1", is_archived=False)
    thread = node("t1", title="phones", pins=[pin])
    assert not find_obsolete_entities([thread], {}, [])


def test_archived_pin_does_not_keep_thread():
    pin = WatcherThread(id=1, url="u", watcher_id=1, thread_id="t1", is_archived=True)
    thread = node("t1", title="phones", pins=[pin])
    assert [t.id for t in find_obsolete_entities([thread], {}, []).threads] == ["t1"]


def test_shared_attachment_survives_while_a_live_post_references_it():
    shared = AttachmentNode(id="shared", thread_ids=["dead"], post_ids=["live::p1"])
    only_dead = AttachmentNode(id="only-dead", thread_ids=["dead"], post_ids=["dead::p1"])
    dead = node("dead", title="phones", posts=[PostNode("dead::p1", [only_dead])], attachments=[shared, only_dead])
    live = node("live", title="linux", posts=[PostNode("live::p1", [shared])])

    found = find_obsolete_entities([dead, live], {}, [crawler_for(entry(["g"], "linux"))])

    assert [t.id for t in found.threads] == ["dead"]
    assert [p.id for p in found.posts] == ["dead::p1"]
    assert [a.id for a in found.attachments] == ["only-dead"]


def test_pluralize():
    assert pluralize("thread", 1) == "1 thread"
    assert pluralize("post", 0) == "0 posts"


def test_collector_deletes_posts_then_threads_then_queues_files(db, queue, attachment_service):
    g = make_board("g")
    thread = make_thread(1, title="phones", board=g, attachments=[make_attachment(g, 10, "op")])
    post = make_post(thread, 2, [make_attachment(g, 11, "reply")])
    for attachment in [*thread.attachments, *post.attachments]:
        db.upsert_attachment(attachment, watcher_ids=[])
    db.upsert_thread(thread, watcher_ids=[], attachment_ids=["op"], post_count=1, attachment_count=2)
    db.upsert_post(post, attachment_ids=["reply"])
    db.mark_all_threads_archived()

    collector = ObsoleteEntityCollector(db, WatcherService(db), attachment_service)
    found = collector.run([crawler_for(entry(["g"], "linux"))])

    assert len(found.threads) == 1 and len(found.posts) == 1
    assert db.calls.index("delete_posts") < db.calls.index("delete_threads")
    assert db.threads == {} and db.posts == {}
    assert sorted(j.payload["attachment_id"] for j in queue.pending) == ["op", "reply"]
    assert {j.name for j in queue.pending} == {"deletion"}
