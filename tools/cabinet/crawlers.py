"""Crawlers – per-source query matching on top of a provider."""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Protocol
from urllib.parse import urlparse, urlunparse

from .config import FourChanWatcherConfig, QueryItem, WatcherConfig, WatcherEntry
from .errors import CrawlerError
from .models import RawBoard, RawPost, RawThread, Watcher, WatcherThread
from .providers import BaseProvider, FourChanProvider

logger = logging.getLogger("cabinet.crawler")


class MatchableThread(Protocol):
    """Anything with a board code, a title and a content: raw or persisted."""
    board_code: str
    title: str | None
    content: str | None


# ── query matching ───────────────────────────────────────────────


@dataclass(frozen=True)
class CompiledQuery:
    item: QueryItem
    regex: re.Pattern | None = None

    @property
    def exclude(self) -> bool:
        return self.item.exclude

    @property
    def ignore_case(self) -> bool:
        if self.item.type == "regex":
            return self.item.ignore_case
        return self.item.case_insensitive

    def matches(self, text: str | None) -> bool:
        if not text:
            return False
        if self.regex is not None:
            return self.regex.search(text) is not None
        # plain text, or a regex that did not compile
        needle = self.item.query
        if self.ignore_case:
            return needle.lower() in text.lower()
        return needle in text


def compile_query(item: QueryItem) -> CompiledQuery:
    if item.type != "regex":
        return CompiledQuery(item)
    flags = 0
    if item.ignore_case:
        flags |= re.IGNORECASE
    if item.multiline:
        flags |= re.MULTILINE
    if item.dot_all:
        flags |= re.DOTALL
    # str patterns are always unicode-aware, so the unicode flag needs no mapping
    try:
        return CompiledQuery(item, re.compile(item.query, flags))
    except re.error:
        return CompiledQuery(item)


def entry_matches(entry: WatcherEntry, thread: MatchableThread) -> bool:
    queries = [compile_query(q) for q in entry.queries]
    includes = [q for q in queries if not q.exclude]
    excludes = [q for q in queries if q.exclude]

    title, content = thread.title, thread.content
    title_matched = any(q.matches(title) for q in includes)
    content_matched = any(q.matches(content) for q in includes)
    title_excluded = any(q.matches(title) for q in excludes)
    content_excluded = any(q.matches(content) for q in excludes)

    if entry.target == "title":
        return title_matched and not title_excluded and (not content or not content_excluded)
    if entry.target == "content":
        return content_matched and not content_excluded and (not title or not title_excluded)
    return (title_matched or content_matched) and not title_excluded and not content_excluded


def check_if_matched(entries: Iterable[WatcherEntry], thread: MatchableThread) -> bool:
    """Only the first entry covering the thread's board is ever consulted."""
    board_code = getattr(thread, "board_code", None)
    if not board_code:
        raise ValueError("Given thread doesn't have board data")
    for entry in entries:
        if board_code in entry.boards:
            return entry_matches(entry, thread)
    return False


# ── archive cache ────────────────────────────────────────────────

_MISSING = object()


class ArchivedThreadCache:
    """Resolved archived threads keyed by thread id; ``None`` records a failed lookup.

    Owned by the orchestrator and discarded on reconfiguration.  Bounded LRU.
    """

    def __init__(self, max_size: int = 50_000) -> None:
        self.max_size = max_size
        self._items: OrderedDict[int, RawThread | None] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, thread_id: int) -> bool:
        with self._lock:
            return thread_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def get(self, thread_id: int, default: Any = _MISSING) -> Any:
        with self._lock:
            if thread_id not in self._items:
                if default is _MISSING:
                    raise KeyError(thread_id)
                return default
            self._items.move_to_end(thread_id)
            return self._items[thread_id]

    def set(self, thread_id: int, thread: RawThread | None) -> None:
        with self._lock:
            self._items[thread_id] = thread
            self._items.move_to_end(thread_id)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)


# ── crawlers ─────────────────────────────────────────────────────


@dataclass
class CrawlerResult:
    boards: list[RawBoard] = field(default_factory=list)
    threads: list[RawThread] = field(default_factory=list)
    posts: list[RawPost] = field(default_factory=list)
    # watcher-thread id → resolved thread unique id
    watcher_thread_ids: dict[int, str] = field(default_factory=dict)

    @property
    def attachments(self) -> list:
        return [a for item in [*self.threads, *self.posts] for a in item.attachments]


class BaseCrawler(ABC):
    type: ClassVar[str]

    def __init__(self, config: WatcherConfig, watcher: Watcher) -> None:
        self.config = config
        self.entity = watcher

    @staticmethod
    @abstractmethod
    def check_if_matched(config: WatcherConfig, thread: MatchableThread) -> bool:
        ...

    @abstractmethod
    def watch(self, watcher_threads: list[WatcherThread], excluded_thread_ids: list[str]) -> CrawlerResult:
        ...

    @abstractmethod
    def get_actual_url(self, url: str) -> str | None:
        ...

    def close(self) -> None:
        pass


# source endpoint host → thread path pattern
THREAD_PATH_PATTERNS = {
    "a.4cdn.org": re.compile(r"^/([a-z0-9]+)/thread/(\d+)(?:\.json)?(?:/[^/]*)?/?$"),
}


class FourChanCrawler(BaseCrawler):
    type = "four-chan"
    config: FourChanWatcherConfig

    def __init__(
        self,
        config: FourChanWatcherConfig,
        watcher: Watcher,
        archive_cache: ArchivedThreadCache,
        provider: BaseProvider | None = None,
    ) -> None:
        super().__init__(config, watcher)
        self.archive_cache = archive_cache
        self.provider = provider or FourChanProvider(config)

    @staticmethod
    def check_if_matched(config: FourChanWatcherConfig, thread: MatchableThread) -> bool:
        return check_if_matched(config.entries, thread)

    def _parse_thread_url(self, url: str) -> tuple[str, int] | None:
        endpoint_host = urlparse(self.config.endpoint).netloc
        pattern = THREAD_PATH_PATTERNS.get(endpoint_host)
        if pattern is None:
            return None
        match = pattern.match(urlparse(url).path)
        if not match:
            return None
        return match.group(1), int(match.group(2))

    def get_actual_url(self, url: str) -> str | None:
        parsed = urlparse(url)
        target = self._parse_thread_url(url)
        if target is None or not parsed.netloc:
            return None
        board_code, thread_no = target
        return urlunparse((parsed.scheme or "https", parsed.netloc, f"/{board_code}/thread/{thread_no}", "", "", ""))

    # ── watch ────────────────────────────────────────────────────

    def _resolve_pins(
        self,
        watcher_threads: list[WatcherThread],
        all_boards: dict[str, RawBoard],
        matched: dict[str, RawThread],
        resolved: dict[int, str],
    ) -> None:
        for pin in watcher_threads:
            try:
                target = self._parse_thread_url(pin.url)
                if target is None:
                    logger.warning("Failed to parse watcher thread URL: %s", pin.url)
                    continue
                board_code, thread_no = target
                board = all_boards.get(board_code)
                if board is None:
                    logger.warning("Failed to find board for watcher thread: /%s/ (%s)", board_code, pin.url)
                    continue
                thread = self.provider.get_thread_from_id(thread_no, board)
                if thread is None:
                    logger.warning("Failed to find thread for watcher thread: %d (%s)", thread_no, pin.url)
                    continue
                matched[thread.unique_id] = thread
                resolved[pin.id] = thread.unique_id
            except Exception as exc:
                logger.warning("Failed to resolve watcher thread %s: %s", pin.url, exc)

    def _search_archive(self, boards: dict[str, RawBoard]) -> dict[str, RawThread]:
        archived: dict[str, RawThread] = {}
        codes = sorted({code for e in self.config.entries if e.search_archive for code in e.boards})
        for code in codes:
            board = boards.get(code)
            if board is None:
                raise CrawlerError(f"Could not find board for search archive: {code}")
            for thread_no in self.provider.get_archived_thread_ids(board):
                if thread_no in self.archive_cache:
                    cached = self.archive_cache.get(thread_no)
                    if cached is not None:
                        archived[cached.unique_id] = cached
                    continue
                try:
                    thread = self.provider.get_thread_from_id(thread_no, board)
                except Exception as exc:
                    self.archive_cache.set(thread_no, None)
                    logger.error("Failed to get archived thread %d from board %s: %s", thread_no, code, exc)
                    continue
                self.archive_cache.set(thread_no, thread)
                if thread is not None:
                    archived[thread.unique_id] = thread
        return archived

    def watch(self, watcher_threads: list[WatcherThread], excluded_thread_ids: list[str]) -> CrawlerResult:
        matched: dict[str, RawThread] = {}
        resolved: dict[int, str] = {}
        all_boards = {b.code: b for b in self.provider.get_all_boards()}

        self._resolve_pins(watcher_threads, all_boards, matched, resolved)

        wanted = {code for e in self.config.entries for code in e.boards}
        boards: dict[str, RawBoard] = {code: b for code, b in all_boards.items() if code in wanted}
        for thread in matched.values():
            boards.setdefault(thread.board.code, thread.board)

        live: dict[str, RawThread] = {}
        for board in boards.values():
            for thread in self.provider.get_threads_from_board(board):
                live[thread.unique_id] = thread

        archived = self._search_archive(boards)

        excluded = set(excluded_thread_ids)
        for entry in self.config.entries:
            candidates = [t for t in live.values() if t.board.code in entry.boards]
            if entry.search_archive:
                candidates += [t for t in archived.values() if t.board.code in entry.boards]
            for thread in candidates:
                if thread.unique_id in excluded:
                    continue
                if check_if_matched([entry], thread):
                    matched[thread.unique_id] = thread

        posts: list[RawPost] = []
        for thread in matched.values():
            posts.extend(self.provider.get_posts_from_thread(thread))

        return CrawlerResult(
            boards=list(boards.values()),
            threads=list(matched.values()),
            posts=posts,
            watcher_thread_ids=resolved,
        )

    def close(self) -> None:
        self.provider.close()


CRAWLERS: dict[str, type[BaseCrawler]] = {
    FourChanCrawler.type: FourChanCrawler,
}


def create_crawler(config: WatcherConfig, watcher: Watcher, archive_cache: ArchivedThreadCache) -> BaseCrawler:
    try:
        crawler_cls = CRAWLERS[config.type]
    except KeyError:
        raise CrawlerError(f"Unknown watcher configuration type '{config.type}'") from None
    return crawler_cls(config, watcher, archive_cache)
