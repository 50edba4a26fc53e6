"""Providers translate a source's wire format into raw cabinet records."""

from __future__ import annotations

import html
from abc import ABC, abstractmethod
from urllib.parse import urlparse

from .api import FourChanAPI
from .config import FourChanWatcherConfig
from .models import RawAttachment, RawBoard, RawPost, RawThread


class BaseProvider(ABC):
    name: str

    @abstractmethod
    def get_all_boards(self) -> list[RawBoard]:
        ...

    @abstractmethod
    def get_threads_from_board(self, board: RawBoard) -> list[RawThread]:
        ...

    @abstractmethod
    def get_thread_from_id(self, thread_id: int, board: RawBoard) -> RawThread | None:
        ...

    @abstractmethod
    def get_posts_from_thread(self, thread: RawThread) -> list[RawPost]:
        ...

    @abstractmethod
    def get_archived_thread_ids(self, board: RawBoard) -> list[int]:
        ...

    def close(self) -> None:
        pass

    def __enter__(self) -> BaseProvider:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class FourChanProvider(BaseProvider):
    name = "four-chan"

    def __init__(self, cfg: FourChanWatcherConfig, api: FourChanAPI | None = None) -> None:
        self.cfg = cfg
        self.api = api or FourChanAPI(cfg)
        self.namespace = urlparse(cfg.endpoint).netloc

    # ── mapping ──────────────────────────────────────────────────

    def _map_attachment(self, board: RawBoard, item: dict) -> list[RawAttachment]:
        """4chan inlines at most one file per post; no md5 means no file."""
        if "md5" not in item or "tim" not in item:
            return []
        tim = item["tim"]
        base = self.cfg.image_endpoint.rstrip("/")
        thumbnail = RawAttachment(
            board=board,
            name=f"{tim}s",
            extension=".jpg",
            width=item.get("tn_w", 0),
            height=item.get("tn_h", 0),
            created_at=tim,
            url=f"{base}/{board.code}/{tim}s.jpg",
        )
        return [
            RawAttachment(
                board=board,
                name=html.unescape(item.get("filename", str(tim))),
                extension=item.get("ext", ""),
                width=item.get("w", 0),
                height=item.get("h", 0),
                created_at=tim,
                url=f"{base}/{board.code}/{tim}{item.get('ext', '')}",
                hash=item["md5"],
                size=item.get("fsize"),
                thumbnail=thumbnail,
            )
        ]

    def _map_thread(self, board: RawBoard, op: dict) -> RawThread:
        return RawThread(
            board=board,
            no=op["no"],
            author=op.get("name", "Anonymous"),
            title=op.get("sub"),
            content=op.get("com"),
            created_at=op.get("time", 0),
            bumped_at=op.get("last_modified"),
            attachments=self._map_attachment(board, op),
        )

    # ── public API ───────────────────────────────────────────────

    def get_all_boards(self) -> list[RawBoard]:
        return [
            RawBoard(
                namespace=self.namespace,
                provider=self.name,
                code=b["board"],
                title=b.get("title", ""),
                description=html.unescape(b.get("meta_description", "")),
            )
            for b in self.api.get_boards()
        ]

    def get_threads_from_board(self, board: RawBoard) -> list[RawThread]:
        return [
            self._map_thread(board, t)
            for page in self.api.get_catalog(board.code)
            for t in page.get("threads", [])
        ]

    def get_thread_from_id(self, thread_id: int, board: RawBoard) -> RawThread | None:
        data = self.api.get_thread(board.code, thread_id)
        if not data or not data.get("posts"):
            return None
        return self._map_thread(board, data["posts"][0])

    def get_posts_from_thread(self, thread: RawThread) -> list[RawPost]:
        data = self.api.get_thread(thread.board.code, thread.no)
        if not data:
            return []
        return [
            RawPost(
                board=thread.board,
                thread=thread,
                no=p["no"],
                author=p.get("name", "Anonymous"),
                title=p.get("sub"),
                content=p.get("com"),
                created_at=p.get("time", 0),
                attachments=self._map_attachment(thread.board, p),
            )
            for p in data.get("posts", [])
        ]

    def get_archived_thread_ids(self, board: RawBoard) -> list[int]:
        return self.api.get_archive(board.code)

    def close(self) -> None:
        self.api.close()
