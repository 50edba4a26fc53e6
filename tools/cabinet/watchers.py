"""Watcher service – keep configured watchers, pins and exclusions in the database."""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Iterable

from .config import WatcherConfig
from .crawlers import CRAWLERS
from .db import Database
from .errors import ConfigError, DuplicateWatcherError
from .models import ExcludedThread, ThreadNode, Watcher, WatcherThread

logger = logging.getLogger("cabinet.watchers")


def _check_unique_names(watcher_configs: Iterable[WatcherConfig]) -> None:
    counts = Counter(cfg.name for cfg in watcher_configs)
    for name, count in counts.items():
        if count > 1:
            raise DuplicateWatcherError(name)


def _matched_threads(cfg: WatcherConfig, threads: list[ThreadNode]) -> list[ThreadNode]:
    crawler_cls = CRAWLERS[cfg.type]
    return [t for t in threads if t.board_code and crawler_cls.check_if_matched(cfg, t)]


def _attachment_ids(threads: list[ThreadNode]) -> list[str]:
    ids = [a.id for t in threads for a in t.attachments]
    ids += [a.id for t in threads for p in t.posts for a in p.attachments]
    return list(dict.fromkeys(ids))


class WatcherService:
    def __init__(self, db: Database) -> None:
        self.db = db

    def initialize(self, watcher_configs: Iterable[WatcherConfig], mode: str = "keep") -> list[Watcher]:
        """Make the watchers table mirror the configuration.

        ``reset`` drops every watcher (pins and exclusions go with them) and
        reconnects already-persisted threads each new watcher would match.
        ``keep`` only creates the watchers that are missing, so pins and
        exclusions survive a configuration reload.
        """
        configs = list(watcher_configs)
        _check_unique_names(configs)
        for cfg in configs:
            if cfg.type not in CRAWLERS:
                raise ConfigError(f"Unknown watcher configuration type '{cfg.type}'")

        started = time.monotonic()
        watchers: list[Watcher] = []

        if mode == "reset":
            self.db.delete_all_watchers()
            threads = self.db.load_thread_graph() if configs else []
            for cfg in configs:
                watcher = self.db.create_watcher(cfg.name, cfg.type, cfg.to_dict())
                matched = _matched_threads(cfg, threads)
                self.db.connect_watcher(
                    watcher.id,
                    thread_ids=[t.id for t in matched],
                    attachment_ids=_attachment_ids(matched),
                )
                logger.info("Watcher '%s' reconnected to %d persisted threads", cfg.name, len(matched))
                watchers.append(watcher)
        elif mode == "keep":
            for cfg in configs:
                # create_watcher upserts by name, refreshing the stored config
                watchers.append(self.db.create_watcher(cfg.name, cfg.type, cfg.to_dict()))
        else:
            raise ConfigError(f"Unknown watcher sync mode '{mode}'")

        logger.info(
            "Initialized %d watchers (%s) in %.2fs", len(watchers), mode, time.monotonic() - started
        )
        return watchers

    def find_by_name(self, name: str) -> Watcher:
        watcher = self.db.find_watcher_by_name(name)
        if watcher is None:
            raise ConfigError(f"Watcher with name '{name}' not found")
        return watcher

    # ── exclusions ───────────────────────────────────────────────

    def get_excluded_threads(self) -> list[ExcludedThread]:
        return self.db.get_excluded_threads()

    def get_excluded_thread_ids(self, watcher: Watcher) -> list[str]:
        return [e.thread_id for e in self.get_excluded_threads() if e.watcher_id == watcher.id]

    def exclude_thread(self, watcher: Watcher, thread_id: str) -> None:
        self.db.exclude_thread(watcher.id, thread_id)
        logger.info("Watcher '%s' now excludes thread %s", watcher.name, thread_id)

    # ── pins ─────────────────────────────────────────────────────

    def get_watcher_threads(self, watcher: Watcher) -> list[WatcherThread]:
        return self.db.get_watcher_threads(watcher.id)

    def add_watcher_thread(self, watcher: Watcher, url: str) -> WatcherThread:
        pin = self.db.create_watcher_thread(watcher.id, url)
        logger.info("Pinned %s to watcher '%s'", url, watcher.name)
        return pin

    def connect_watcher_threads(self, resolved: dict[int, str]) -> None:
        """Link each pin to the thread it resolved to during the cycle."""
        for watcher_thread_id, thread_id in resolved.items():
            self.db.link_watcher_thread(watcher_thread_id, thread_id)

    def mark_watcher_threads_as_archived(self, watcher_threads: Iterable[WatcherThread]) -> None:
        ids = [pin.id for pin in watcher_threads]
        if ids:
            self.db.set_watcher_threads_archived(ids, True)
            logger.info("Marked %d watcher threads as archived", len(ids))
