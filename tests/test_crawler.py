import pytest

from cabinet.crawlers import ArchivedThreadCache, FourChanCrawler, create_crawler
from cabinet.errors import CrawlerError
from cabinet.models import Watcher, WatcherThread

from fakes import FakeProvider, entry, make_attachment, make_board, make_post, make_thread, watcher_config

WATCHER = Watcher(id=1, name="wallpapers", type="four-chan")


def make_crawler(provider, *entries, cache=None):
    cfg = watcher_config("wallpapers", *entries)
    return FourChanCrawler(cfg, WATCHER, cache if cache is not None else ArchivedThreadCache(), provider=provider)


def test_watch_matches_live_threads_and_collects_posts():
    g = make_board("g")
    hit = make_thread(1, title="linux desktop", board=g, attachments=[make_attachment(g, 100, "aaa")])
    miss = make_thread(2, title="phones", board=g)
    provider = FakeProvider(boards=[g], threads=[hit, miss])
    provider.posts[hit.unique_id] = [make_post(hit, 3, [make_attachment(g, 101, "bbb")])]

    result = make_crawler(provider, entry(["g"], "linux")).watch([], [])

    assert [t.no for t in result.threads] == [1]
    assert [p.no for p in result.posts] == [3]
    assert {a.unique_id for a in result.attachments} == {"aaa", "bbb"}
    assert [b.code for b in result.boards] == ["g"]


def test_excluded_threads_are_skipped():
    g = make_board("g")
    thread = make_thread(1, title="linux", board=g)
    provider = FakeProvider(boards=[g], threads=[thread])

    result = make_crawler(provider, entry(["g"], "linux")).watch([], [thread.unique_id])

    assert result.threads == []


def test_pinned_thread_is_included_without_matching():
    g, wg = make_board("g"), make_board("wg")
    pinned = make_thread(42, title="unrelated", board=wg)
    provider = FakeProvider(boards=[g, wg], extra=[pinned])
    pin = WatcherThread(id=7, url="https://boards.4chan.org/wg/thread/42/some-slug", watcher_id=1)

    result = make_crawler(provider, entry(["g"], "linux")).watch([pin], [])

    assert [t.unique_id for t in result.threads] == [pinned.unique_id]
    assert result.watcher_thread_ids == {7: pinned.unique_id}
    assert {b.code for b in result.boards} == {"g", "wg"}


def test_unresolvable_pins_are_skipped():
    g = make_board("g")
    provider = FakeProvider(boards=[g])
    pins = [
        WatcherThread(id=1, url="https://example.com/not-a-thread", watcher_id=1),
        WatcherThread(id=2, url="https://boards.4chan.org/zz/thread/5", watcher_id=1),
        WatcherThread(id=3, url="https://boards.4chan.org/g/thread/404", watcher_id=1),
    ]

    result = make_crawler(provider, entry(["g"], "linux")).watch(pins, [])

    assert result.threads == []
    assert result.watcher_thread_ids == {}


def test_archive_search_uses_shared_cache():
    g = make_board("g")
    archived = make_thread(9, title="linux rice", board=g)
    provider = FakeProvider(boards=[g], archived={"g": [9, 10]}, extra=[archived])
    provider.failing_ids.add(10)
    cache = ArchivedThreadCache()

    first = make_crawler(provider, entry(["g"], "linux", search_archive=True), cache=cache).watch([], [])
    second = make_crawler(provider, entry(["g"], "linux", search_archive=True), cache=cache).watch([], [])

    assert [t.no for t in first.threads] == [9]
    assert [t.no for t in second.threads] == [9]
    # each id fetched once, the failure included
    assert sorted(provider.lookups) == [9, 10]
    assert cache.get(10) is None


def test_archive_search_requires_known_board():
    provider = FakeProvider(boards=[make_board("g")])
    crawler = make_crawler(provider, entry(["missing"], "linux", search_archive=True))
    with pytest.raises(CrawlerError):
        crawler.watch([], [])


def test_cache_evicts_least_recently_used():
    cache = ArchivedThreadCache(max_size=2)
    cache.set(1, None)
    cache.set(2, None)
    cache.get(1)
    cache.set(3, None)
    assert 1 in cache and 3 in cache
    assert 2 not in cache
    assert len(cache) == 2


def test_get_actual_url_normalizes_thread_urls():
    crawler = make_crawler(FakeProvider(), entry(["g"], "x"))
    assert crawler.get_actual_url("https://boards.4chan.org/g/thread/123/linux-general#p456") == (
        "https://boards.4chan.org/g/thread/123"
    )
    assert crawler.get_actual_url("https://a.4cdn.org/g/thread/123.json") == "https://a.4cdn.org/g/thread/123"
    assert crawler.get_actual_url("https://boards.4chan.org/g/catalog") is None


def test_unknown_watcher_type_is_rejected():
    cfg = watcher_config("x", entry(["g"], "x"))
    object.__setattr__(cfg, "type", "eight-chan")
    with pytest.raises(CrawlerError):
        create_crawler(cfg, WATCHER, ArchivedThreadCache())
