"""Obsolete-entity collector – drop threads no watcher cares about anymore."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from .attachments import AttachmentService
from .crawlers import BaseCrawler
from .db import Database
from .models import AttachmentNode, PostNode, ThreadNode
from .watchers import WatcherService

logger = logging.getLogger("cabinet.collector")


def pluralize(word: str, count: int) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


@dataclass
class ObsoleteEntities:
    threads: list[ThreadNode] = field(default_factory=list)
    posts: list[PostNode] = field(default_factory=list)
    attachments: list[AttachmentNode] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.threads or self.posts or self.attachments)


def _is_obsolete(
    thread: ThreadNode, excluded: dict[int, set[str]], crawlers: Iterable[BaseCrawler]
) -> bool:
    # (a) every associated watcher has excluded the thread; unwatched threads fall to (b)
    if thread.watcher_ids and all(thread.id in excluded.get(wid, ()) for wid in thread.watcher_ids):
        return True

    # (b) unseen this cycle, not pinned anymore, and no live query accepts it
    if not thread.is_archived:
        return False
    if any(not pin.is_archived for pin in thread.watcher_threads):
        return False
    if not thread.board_code:
        return True
    return not any(type(c).check_if_matched(c.config, thread) for c in crawlers)


def find_obsolete_entities(
    threads: Iterable[ThreadNode],
    excluded: dict[int, set[str]],
    crawlers: Iterable[BaseCrawler],
) -> ObsoleteEntities:
    """Pure decision over a loaded thread graph.

    ``excluded`` maps a watcher id to the thread ids it excluded.  An
    attachment is obsolete only when every distinct thread or post that
    references it is itself obsolete.
    """
    crawlers = list(crawlers)
    obsolete_threads = [t for t in threads if _is_obsolete(t, excluded, crawlers)]
    obsolete_posts = [p for t in obsolete_threads for p in t.posts]

    dead_ids = {t.id for t in obsolete_threads} | {p.id for p in obsolete_posts}

    candidates: dict[str, AttachmentNode] = {}
    for thread in obsolete_threads:
        for attachment in thread.attachments:
            candidates.setdefault(attachment.id, attachment)
        for post in thread.posts:
            for attachment in post.attachments:
                candidates.setdefault(attachment.id, attachment)

    obsolete_attachments = [
        a for a in candidates.values() if set(a.thread_ids) | set(a.post_ids) <= dead_ids
    ]
    return ObsoleteEntities(obsolete_threads, obsolete_posts, obsolete_attachments)


class ObsoleteEntityCollector:
    def __init__(self, db: Database, watchers: WatcherService, attachments: AttachmentService) -> None:
        self.db = db
        self.watchers = watchers
        self.attachments = attachments

    def run(self, crawlers: Iterable[BaseCrawler]) -> ObsoleteEntities:
        logger.info("Now try to delete obsolete entities")

        excluded: dict[int, set[str]] = defaultdict(set)
        for item in self.watchers.get_excluded_threads():
            excluded[item.watcher_id].add(item.thread_id)

        found = find_obsolete_entities(self.db.load_thread_graph(), excluded, crawlers)
        if not found:
            logger.info("No obsolete entities found.")
            return found

        logger.info("Successfully found these obsolete entities:")
        logger.info("  - %s", pluralize("thread", len(found.threads)))
        logger.info("  - %s", pluralize("post", len(found.posts)))
        logger.info("  - %s", pluralize("attachment", len(found.attachments)))

        self.db.delete_posts([p.id for p in found.posts])
        self.db.delete_threads([t.id for t in found.threads])
        # files are removed later by the attachment workers
        self.attachments.clean_up_many([a.id for a in found.attachments])
        return found
