"""Database operations – map crawled records into cabinet tables."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from importlib import resources
from typing import Any, Iterable

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .config import DatabaseConfig
from .models import (
    AttachmentNode,
    AttachmentRow,
    ExcludedThread,
    PostNode,
    RawAttachment,
    RawBoard,
    RawPost,
    RawThread,
    ThreadNode,
    Watcher,
    WatcherThread,
    ms_to_dt,
    ts_to_dt,
)

logger = logging.getLogger("cabinet.db")


def _watcher(row: dict) -> Watcher:
    return Watcher(id=row["id"], name=row["name"], type=row["type"], config=row["config"] or {})


def _watcher_thread(row: dict) -> WatcherThread:
    return WatcherThread(
        id=row["id"],
        url=row["url"],
        watcher_id=row["watcher_id"],
        thread_id=row["thread_id"],
        is_archived=row["is_archived"],
    )


class Database:
    """Postgres interface for cabinet.

    The connection runs in autocommit mode; statements that must land
    together are wrapped in ``conn.transaction()``.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._conn: psycopg.Connection | None = None

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(self.cfg.dsn, row_factory=dict_row, autocommit=True)
        return self._conn

    def migrate(self) -> None:
        """Create every table and index that does not exist yet."""
        ddl = resources.files("cabinet").joinpath("schema.sql").read_text(encoding="utf-8")
        with self.conn.transaction():
            self.conn.execute(ddl)
        logger.info("Database schema is up to date")

    # ── board operations ─────────────────────────────────────────

    def upsert_board(self, board: RawBoard) -> None:
        self.conn.execute(
            """INSERT INTO boards (id, namespace, provider, code, title, description)
               VALUES (%s, %s, %s, %s, %s, %s)
               ON CONFLICT (id) DO UPDATE SET
                   title       = EXCLUDED.title,
                   description = EXCLUDED.description""",
            (board.unique_id, board.namespace, board.provider, board.code, board.title, board.description),
        )

    # ── thread / post operations ─────────────────────────────────

    def mark_all_threads_archived(self) -> int:
        cur = self.conn.execute("UPDATE threads SET is_archived = TRUE")
        return cur.rowcount

    def upsert_thread(
        self,
        thread: RawThread,
        *,
        watcher_ids: Iterable[int],
        attachment_ids: Iterable[str],
        post_count: int,
        attachment_count: int,
    ) -> None:
        """Insert or refresh a thread, unioning its watcher and attachment links."""
        tid = thread.unique_id
        created_at = ts_to_dt(thread.created_at)
        bumped_at = ts_to_dt(thread.bumped_at) if thread.bumped_at else created_at
        with self.conn.transaction():
            self.conn.execute(
                """INSERT INTO threads (id, board_id, no, author, title, content,
                                        created_at, bumped_at, is_archived,
                                        post_count, attachment_count)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s)
                   ON CONFLICT (id) DO UPDATE SET
                       author           = EXCLUDED.author,
                       title            = EXCLUDED.title,
                       content          = EXCLUDED.content,
                       bumped_at        = EXCLUDED.bumped_at,
                       is_archived      = FALSE,
                       post_count       = EXCLUDED.post_count,
                       attachment_count = EXCLUDED.attachment_count""",
                (
                    tid, thread.board.unique_id, thread.no, thread.author, thread.title, thread.content,
                    created_at, bumped_at, post_count, attachment_count,
                ),
            )
            self._link("thread_watchers", "thread_id", "watcher_id", tid, watcher_ids)
            self._link("thread_attachments", "thread_id", "attachment_id", tid, attachment_ids)

    def upsert_post(self, post: RawPost, *, attachment_ids: Iterable[str]) -> None:
        pid = post.unique_id
        with self.conn.transaction():
            self.conn.execute(
                """INSERT INTO posts (id, thread_id, board_id, no, author, title, content, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (id) DO UPDATE SET
                       author  = EXCLUDED.author,
                       title   = EXCLUDED.title,
                       content = EXCLUDED.content""",
                (
                    pid, post.thread.unique_id, post.board.unique_id, post.no, post.author,
                    post.title, post.content, ts_to_dt(post.created_at),
                ),
            )
            self._link("post_attachments", "post_id", "attachment_id", pid, attachment_ids)

    def delete_posts(self, ids: list[str]) -> int:
        if not ids:
            return 0
        return self.conn.execute("DELETE FROM posts WHERE id = ANY(%s)", (ids,)).rowcount

    def delete_threads(self, ids: list[str]) -> int:
        if not ids:
            return 0
        return self.conn.execute("DELETE FROM threads WHERE id = ANY(%s)", (ids,)).rowcount

    def _link(self, table: str, left: str, right: str, left_id: Any, right_ids: Iterable[Any]) -> None:
        rows = [(left_id, rid) for rid in dict.fromkeys(right_ids)]
        if not rows:
            return
        with self.conn.cursor() as cur:
            cur.executemany(
                f"INSERT INTO {table} ({left}, {right}) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                rows,
            )

    # ── attachments ──────────────────────────────────────────────

    def upsert_attachment(self, attachment: RawAttachment, *, watcher_ids: Iterable[int]) -> None:
        aid = attachment.unique_id
        thumb = attachment.thumbnail
        with self.conn.transaction():
            self.conn.execute(
                """INSERT INTO attachments (id, name, size, width, height, hash, extension,
                                            timestamp, thumbnail_width, thumbnail_height, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (id) DO UPDATE SET
                       name             = EXCLUDED.name,
                       size             = EXCLUDED.size,
                       width            = EXCLUDED.width,
                       height           = EXCLUDED.height,
                       hash             = EXCLUDED.hash,
                       extension        = EXCLUDED.extension,
                       thumbnail_width  = EXCLUDED.thumbnail_width,
                       thumbnail_height = EXCLUDED.thumbnail_height""",
                (
                    aid, attachment.name, attachment.size, attachment.width, attachment.height,
                    attachment.hash, attachment.extension, attachment.created_at,
                    thumb.width if thumb else None, thumb.height if thumb else None,
                    ms_to_dt(attachment.created_at),
                ),
            )
            self._link("attachment_watchers", "attachment_id", "watcher_id", aid, watcher_ids)

    def get_attachment(self, attachment_id: str) -> AttachmentRow | None:
        row = self.conn.execute(
            """SELECT id, name, extension, width, height, created_at, hash, size,
                      file_uri, thumbnail_file_uri, mime, favorite
               FROM attachments WHERE id = %s""",
            (attachment_id,),
        ).fetchone()
        return AttachmentRow(**row) if row else None

    def update_attachment_files(
        self, attachment_id: str, *, file_uri: str, thumbnail_file_uri: str | None, mime: str
    ) -> None:
        self.conn.execute(
            """UPDATE attachments
               SET file_uri = %s, thumbnail_file_uri = %s, mime = %s, downloaded_at = %s
               WHERE id = %s""",
            (file_uri, thumbnail_file_uri, mime, datetime.now(timezone.utc), attachment_id),
        )

    def delete_attachment(self, attachment_id: str) -> None:
        self.conn.execute("DELETE FROM attachments WHERE id = %s", (attachment_id,))

    # ── watchers ─────────────────────────────────────────────────

    def find_watcher_by_name(self, name: str) -> Watcher | None:
        row = self.conn.execute("SELECT * FROM watchers WHERE name = %s", (name,)).fetchone()
        return _watcher(row) if row else None

    def create_watcher(self, name: str, type_: str, config: dict) -> Watcher:
        row = self.conn.execute(
            """INSERT INTO watchers (name, type, config) VALUES (%s, %s, %s)
               ON CONFLICT (name) DO UPDATE SET type = EXCLUDED.type, config = EXCLUDED.config
               RETURNING *""",
            (name, type_, Jsonb(config)),
        ).fetchone()
        return _watcher(row)

    def delete_all_watchers(self) -> int:
        return self.conn.execute("DELETE FROM watchers").rowcount

    def connect_watcher(self, watcher_id: int, *, thread_ids: Iterable[str], attachment_ids: Iterable[str]) -> None:
        with self.conn.transaction(), self.conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO thread_watchers (thread_id, watcher_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                [(tid, watcher_id) for tid in dict.fromkeys(thread_ids)],
            )
            cur.executemany(
                "INSERT INTO attachment_watchers (attachment_id, watcher_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                [(aid, watcher_id) for aid in dict.fromkeys(attachment_ids)],
            )

    # ── watcher threads / exclusions ─────────────────────────────

    def get_watcher_threads(self, watcher_id: int) -> list[WatcherThread]:
        rows = self.conn.execute(
            "SELECT * FROM watcher_threads WHERE watcher_id = %s ORDER BY id", (watcher_id,)
        ).fetchall()
        return [_watcher_thread(r) for r in rows]

    def create_watcher_thread(self, watcher_id: int, url: str) -> WatcherThread:
        row = self.conn.execute(
            """INSERT INTO watcher_threads (watcher_id, url) VALUES (%s, %s)
               ON CONFLICT (watcher_id, url) DO UPDATE SET is_archived = FALSE
               RETURNING *""",
            (watcher_id, url),
        ).fetchone()
        return _watcher_thread(row)

    def link_watcher_thread(self, watcher_thread_id: int, thread_id: str) -> None:
        self.conn.execute(
            "UPDATE watcher_threads SET thread_id = %s, is_archived = FALSE WHERE id = %s",
            (thread_id, watcher_thread_id),
        )

    def set_watcher_threads_archived(self, ids: list[int], archived: bool) -> None:
        if not ids:
            return
        self.conn.execute(
            "UPDATE watcher_threads SET is_archived = %s WHERE id = ANY(%s)", (archived, ids)
        )

    def get_excluded_threads(self) -> list[ExcludedThread]:
        rows = self.conn.execute("SELECT watcher_id, thread_id FROM excluded_threads").fetchall()
        return [ExcludedThread(**r) for r in rows]

    def exclude_thread(self, watcher_id: int, thread_id: str) -> None:
        self.conn.execute(
            "INSERT INTO excluded_threads (watcher_id, thread_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (watcher_id, thread_id),
        )

    # ── graph for the collector ──────────────────────────────────

    def load_thread_graph(self) -> list[ThreadNode]:
        """Every thread with its watchers, pins, posts and attachments."""
        conn = self.conn
        threads: dict[str, ThreadNode] = {}
        for r in conn.execute(
            """SELECT t.id, b.code AS board_code, t.title, t.content, t.is_archived
               FROM threads t JOIN boards b ON b.id = t.board_id"""
        ):
            threads[r["id"]] = ThreadNode(
                id=r["id"], board_code=r["board_code"], title=r["title"],
                content=r["content"], is_archived=r["is_archived"],
            )

        for r in conn.execute("SELECT thread_id, watcher_id FROM thread_watchers"):
            if r["thread_id"] in threads:
                threads[r["thread_id"]].watcher_ids.append(r["watcher_id"])

        for r in conn.execute("SELECT * FROM watcher_threads WHERE thread_id IS NOT NULL"):
            if r["thread_id"] in threads:
                threads[r["thread_id"]].watcher_threads.append(_watcher_thread(r))

        # reverse links, shared by every node of the same attachment
        nodes: dict[str, AttachmentNode] = {}

        def node(aid: str) -> AttachmentNode:
            return nodes.setdefault(aid, AttachmentNode(id=aid))

        thread_links = conn.execute("SELECT thread_id, attachment_id FROM thread_attachments").fetchall()
        post_links = conn.execute("SELECT post_id, attachment_id FROM post_attachments").fetchall()
        for r in thread_links:
            node(r["attachment_id"]).thread_ids.append(r["thread_id"])
        for r in post_links:
            node(r["attachment_id"]).post_ids.append(r["post_id"])

        for r in thread_links:
            if r["thread_id"] in threads:
                threads[r["thread_id"]].attachments.append(nodes[r["attachment_id"]])

        posts: dict[str, PostNode] = {}
        for r in conn.execute("SELECT id, thread_id FROM posts"):
            if r["thread_id"] in threads:
                posts[r["id"]] = PostNode(id=r["id"])
                threads[r["thread_id"]].posts.append(posts[r["id"]])
        for r in post_links:
            if r["post_id"] in posts:
                posts[r["post_id"]].attachments.append(nodes[r["attachment_id"]])

        return list(threads.values())

    # ── activity log ─────────────────────────────────────────────

    def insert_activity(self, activity_type: str, start_time: datetime) -> int:
        row = self.conn.execute(
            """INSERT INTO activity_logs (activity_type, start_time, is_success)
               VALUES (%s, %s, FALSE) RETURNING id""",
            (activity_type, start_time),
        ).fetchone()
        return row["id"]

    def finish_activity(
        self,
        activity_id: int,
        *,
        end_time: datetime,
        is_success: bool,
        error_message: str | None = None,
        result: dict | None = None,
    ) -> dict | None:
        return self.conn.execute(
            """UPDATE activity_logs
               SET end_time = %s, is_success = %s, error_message = %s, result = %s
               WHERE id = %s
               RETURNING *""",
            (end_time, is_success, error_message, Jsonb(result) if result is not None else None, activity_id),
        ).fetchone()

    def recent_activities(self, activity_type: str, *, limit: int = 10, successful_only: bool = False) -> list[dict]:
        query = "SELECT * FROM activity_logs WHERE activity_type = %s"
        if successful_only:
            query += " AND is_success"
        query += " ORDER BY created_at DESC LIMIT %s"
        return self.conn.execute(query, (activity_type, limit)).fetchall()

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        if self._conn and not self._conn.closed:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
