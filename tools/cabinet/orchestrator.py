"""Crawl orchestrator – run every watcher's crawler and persist the merged result."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field
from typing import Callable

from .activity import ActivityLog
from .attachments import AttachmentService
from .collector import ObsoleteEntities, ObsoleteEntityCollector, pluralize
from .config import ConfigProvider
from .crawlers import ArchivedThreadCache, BaseCrawler, CrawlerResult, create_crawler
from .db import Database
from .models import RawAttachment, RawBoard, RawPost, RawThread, Watcher, WatcherThread
from .scheduler import BaseScheduler, create_scheduler
from .watchers import WatcherService

logger = logging.getLogger("cabinet.orchestrator")

CrawlerFactory = Callable[..., BaseCrawler]


@dataclass
class WatcherResult:
    watcher_name: str
    threads_found: int = 0
    posts_found: int = 0
    attachments_found: int = 0
    is_successful: bool = True
    error_message: str | None = None


@dataclass
class CycleResult:
    boards: int = 0
    threads: int = 0
    posts: int = 0
    attachments: int = 0
    elapsed: float = 0.0
    watcher_results: list[WatcherResult] = field(default_factory=list)

    def to_activity_result(self) -> dict:
        return {
            "threads_created": self.threads,
            "posts_created": self.posts,
            "attachments_created": self.attachments,
            "boards_processed": self.boards,
            "duration_ms": int(self.elapsed * 1000),
            "watcher_results": [asdict(r) for r in self.watcher_results],
        }


def _union(target: dict[str, list[Watcher]], key: str, watcher: Watcher) -> None:
    watchers = target.setdefault(key, [])
    if all(w.id != watcher.id for w in watchers):
        watchers.append(watcher)


class _CycleState:
    """Everything the crawlers found this cycle, keyed by entity identity."""

    def __init__(self) -> None:
        self.boards: dict[str, RawBoard] = {}
        self.threads: dict[str, RawThread] = {}
        self.posts: dict[str, RawPost] = {}
        self.attachments: dict[str, RawAttachment] = {}
        self.thread_watchers: dict[str, list[Watcher]] = {}
        self.attachment_watchers: dict[str, list[Watcher]] = {}
        self.pins: dict[int, WatcherThread] = {}
        self.resolved: dict[int, str] = {}

    def merge(self, watcher: Watcher, result: CrawlerResult, pins: list[WatcherThread]) -> None:
        for board in result.boards:
            self.boards[board.unique_id] = board
        for thread in result.threads:
            self.threads[thread.unique_id] = thread
            _union(self.thread_watchers, thread.unique_id, watcher)
        for post in result.posts:
            self.posts[post.unique_id] = post
        for attachment in result.attachments:
            self.attachments[attachment.unique_id] = attachment
            _union(self.attachment_watchers, attachment.unique_id, watcher)
        for pin in pins:
            self.pins[pin.id] = pin
        self.resolved.update(result.watcher_thread_ids)


class CrawlOrchestrator:
    """Owns the crawler list, the schedule and the single in-flight crawl cycle."""

    def __init__(
        self,
        config: ConfigProvider,
        db: Database,
        watchers: WatcherService,
        attachments: AttachmentService,
        activity: ActivityLog,
        collector: ObsoleteEntityCollector | None = None,
        crawler_factory: CrawlerFactory = create_crawler,
    ) -> None:
        self.config = config
        self.db = db
        self.watchers = watchers
        self.attachments = attachments
        self.activity = activity
        self.collector = collector or ObsoleteEntityCollector(db, watchers, attachments)
        self.crawler_factory = crawler_factory

        self.crawlers: list[BaseCrawler] = []
        self.archive_cache = ArchivedThreadCache()
        self.scheduler: BaseScheduler | None = None

        self._cycle: Future | None = None
        self._cycle_lock = threading.Lock()
        # held while initializing; a config change waits on it first
        self._init_lock = threading.Lock()
        # held by a running cycle and by a rebuild, so neither sees the other half done
        self._swap_lock = threading.Lock()
        self._running = False
        self._subscribers: list[Callable[[bool], None]] = []
        self._scheduled = False

    # ── lifecycle ────────────────────────────────────────────────

    def initialize(self, schedule: bool = True) -> None:
        self._scheduled = schedule
        with self._init_lock, self._swap_lock:
            self._rebuild()
        self.config.on_change(self.handle_config_change)

    def _rebuild(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None
        for crawler in self.crawlers:
            crawler.close()

        self.watchers.initialize(self.config.watchers, self.config.crawling.watcher_sync)

        # lookups cached against the old configuration are discarded
        self.archive_cache = ArchivedThreadCache()
        crawlers = []
        for cfg in self.config.watchers:
            watcher = self.watchers.find_by_name(cfg.name)
            crawlers.append(self.crawler_factory(cfg, watcher, self.archive_cache))
            logger.info("Successfully created '%s' (%s) crawler", cfg.name, cfg.type)
        self.crawlers = crawlers

        if self._scheduled:
            self.scheduler = create_scheduler(self.config.crawling.interval, self.run_cycle)
            self.scheduler.start()

    def handle_config_change(self) -> None:
        with self._init_lock:
            with self._swap_lock:
                logger.warning("Server configuration changed, reinitializing crawlers and schedulers...")
                self._rebuild()
        logger.info("Crawlers and schedulers reinitialized successfully")

    def shutdown(self) -> None:
        """Stop scheduling new cycles; an in-flight cycle runs to completion."""
        self.config.off_change(self.handle_config_change)
        if self.scheduler is not None:
            self.scheduler.stop()
        with self._swap_lock:
            for crawler in self.crawlers:
                crawler.close()
            self.crawlers = []

    # ── running state ────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Call ``callback`` with the new running state; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_running(self, running: bool) -> None:
        self._running = running
        for callback in list(self._subscribers):
            try:
                callback(running)
            except Exception:
                logger.exception("Running-state subscriber failed")

    # ── lookups ──────────────────────────────────────────────────

    def get_crawler_by_watcher(self, watcher_id: int) -> BaseCrawler | None:
        return next((c for c in self.crawlers if c.entity.id == watcher_id), None)

    def get_actual_url(self, crawler_type: str, url: str) -> str | None:
        crawler = next((c for c in self.crawlers if c.type == crawler_type), None)
        return crawler.get_actual_url(url) if crawler else None

    # ── crawl cycle ──────────────────────────────────────────────

    def run_cycle(self) -> CycleResult:
        """Run one crawl cycle, or wait for and share the one already running."""
        with self._cycle_lock:
            future = self._cycle
            owner = future is None
            if owner:
                future = self._cycle = Future()

        if not owner:
            logger.warning("A crawling task is already running, waiting for it instead.")
            return future.result()

        try:
            with self._swap_lock:
                self._set_running(True)
                result = self._run_cycle(list(self.crawlers))
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._cycle_lock:
                self._cycle = None
            self._set_running(False)

    def _run_cycle(self, crawlers: list[BaseCrawler]) -> CycleResult:
        started = time.monotonic()
        activity = self.activity.start_activity("crawling")
        logger.info("Starting crawling task for %d watchers (Activity ID: %d)", len(crawlers), activity.id)

        try:
            self.db.mark_all_threads_archived()

            state = _CycleState()
            summary = CycleResult()
            for crawler in crawlers:
                summary.watcher_results.append(self._watch(crawler, state))

            self._persist(state)

            summary.boards = len(state.boards)
            summary.threads = len(state.threads)
            summary.posts = len(state.posts)
            summary.attachments = len(state.attachments)
            summary.elapsed = time.monotonic() - started

            logger.info("Successfully finished crawling task with:")
            for word, count in (
                ("board", summary.boards),
                ("thread", summary.threads),
                ("post", summary.posts),
                ("attachment", summary.attachments),
            ):
                logger.info("  - %s", pluralize(word, count))
            logger.info("This crawling task took %.2fs", summary.elapsed)

            if self.config.crawling.delete_obsolete:
                self.clean_up_obsolete_entities(crawlers)

            self.activity.finish_activity(activity.id, is_success=True, result=summary.to_activity_result())
            return summary
        except Exception as exc:
            logger.error("Crawling task failed: %s", exc)
            self.activity.finish_activity(activity.id, is_success=False, error_message=str(exc))
            raise

    def _watch(self, crawler: BaseCrawler, state: _CycleState) -> WatcherResult:
        watcher = crawler.entity
        try:
            excluded = self.watchers.get_excluded_thread_ids(watcher)
            pins = self.watchers.get_watcher_threads(watcher)
            result = crawler.watch(pins, excluded)
        except Exception as exc:
            logger.error("Failed to crawl watcher %s: %s", watcher.name, exc)
            return WatcherResult(watcher.name, is_successful=False, error_message=str(exc))

        state.merge(watcher, result, pins)
        return WatcherResult(
            watcher.name,
            threads_found=len(result.threads),
            posts_found=len(result.posts),
            attachments_found=len(result.attachments),
        )

    def _persist(self, state: _CycleState) -> None:
        for board in state.boards.values():
            self.db.upsert_board(board)

        thread_posts: dict[str, list[RawPost]] = {}
        for post in state.posts.values():
            thread_posts.setdefault(post.thread.unique_id, []).append(post)

        for tid, thread in state.threads.items():
            posts = thread_posts.get(tid, [])
            # the opening post repeats the thread's own file
            files = {a.unique_id for a in thread.attachments}
            files.update(a.unique_id for p in posts for a in p.attachments)
            self.attachments.save_many(thread.attachments, state.attachment_watchers)
            self.db.upsert_thread(
                thread,
                watcher_ids=[w.id for w in state.thread_watchers.get(tid, [])],
                attachment_ids=[a.unique_id for a in thread.attachments],
                post_count=len(posts),
                attachment_count=len(files),
            )

        for post in state.posts.values():
            self.attachments.save_many(post.attachments, state.attachment_watchers)
            self.db.upsert_post(post, attachment_ids=[a.unique_id for a in post.attachments])

        self.watchers.connect_watcher_threads(state.resolved)
        self.watchers.mark_watcher_threads_as_archived(
            pin for pin_id, pin in state.pins.items() if pin_id not in state.resolved
        )

    def clean_up_obsolete_entities(self, crawlers: list[BaseCrawler] | None = None) -> ObsoleteEntities:
        return self.collector.run(self.crawlers if crawlers is None else crawlers)
