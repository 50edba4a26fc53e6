"""Normalised records produced by crawlers and consumed by the persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def ts_to_dt(ts: int | float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def ms_to_dt(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ── raw records (what a crawler sees at the source) ─────────────


@dataclass
class RawBoard:
    namespace: str
    provider: str
    code: str
    title: str = ""
    description: str = ""

    @property
    def unique_id(self) -> str:
        return board_unique_id(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "provider": self.provider,
            "code": self.code,
            "title": self.title,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawBoard:
        return cls(**data)


@dataclass
class RawAttachment:
    board: RawBoard
    name: str
    extension: str
    width: int
    height: int
    created_at: int  # unix milliseconds
    url: str
    hash: str | None = None
    size: int | None = None
    thumbnail: RawAttachment | None = None
    headers: dict[str, str] | None = None

    @property
    def unique_id(self) -> str:
        return attachment_unique_id(self)

    @property
    def file_name(self) -> str:
        return f"{self.created_at}{self.extension}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form used as the download job payload."""
        return {
            "board": self.board.to_dict(),
            "name": self.name,
            "extension": self.extension,
            "width": self.width,
            "height": self.height,
            "created_at": self.created_at,
            "url": self.url,
            "hash": self.hash,
            "size": self.size,
            "thumbnail": self.thumbnail.to_dict() if self.thumbnail else None,
            "headers": self.headers,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawAttachment:
        thumbnail = data.get("thumbnail")
        return cls(
            board=RawBoard.from_dict(data["board"]),
            name=data["name"],
            extension=data["extension"],
            width=data["width"],
            height=data["height"],
            created_at=data["created_at"],
            url=data["url"],
            hash=data.get("hash"),
            size=data.get("size"),
            thumbnail=cls.from_dict(thumbnail) if thumbnail else None,
            headers=data.get("headers"),
        )


@dataclass
class RawThread:
    board: RawBoard
    no: int
    author: str
    created_at: int  # unix seconds
    title: str | None = None
    content: str | None = None
    bumped_at: int | None = None
    attachments: list[RawAttachment] = field(default_factory=list)

    @property
    def unique_id(self) -> str:
        return thread_unique_id(self)

    @property
    def board_code(self) -> str:
        return self.board.code


@dataclass
class RawPost:
    board: RawBoard
    thread: RawThread
    no: int
    author: str
    created_at: int  # unix seconds
    title: str | None = None
    content: str | None = None
    attachments: list[RawAttachment] = field(default_factory=list)

    @property
    def unique_id(self) -> str:
        return post_unique_id(self)


def board_unique_id(board: RawBoard) -> str:
    return "::".join(p for p in (board.namespace, board.provider, board.code) if p)


def thread_unique_id(thread: RawThread) -> str:
    return f"{board_unique_id(thread.board)}::{thread.no}"


def post_unique_id(post: RawPost) -> str:
    return f"{thread_unique_id(post.thread)}::{post.no}"


def attachment_unique_id(attachment: RawAttachment) -> str:
    if attachment.hash:
        return attachment.hash
    return f"{board_unique_id(attachment.board)}::{attachment.name}"


# ── persisted records ────────────────────────────────────────────


@dataclass
class Watcher:
    id: int
    name: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class WatcherThread:
    """A thread URL pinned to a watcher by hand."""
    id: int
    url: str
    watcher_id: int
    thread_id: str | None = None
    is_archived: bool = False


@dataclass
class ExcludedThread:
    watcher_id: int
    thread_id: str


@dataclass
class AttachmentRow:
    id: str
    name: str
    extension: str
    width: int
    height: int
    created_at: datetime
    hash: str | None = None
    size: int | None = None
    file_uri: str | None = None
    thumbnail_file_uri: str | None = None
    mime: str | None = None
    favorite: bool = False


# ── collector graph ──────────────────────────────────────────────


@dataclass
class AttachmentNode:
    id: str
    thread_ids: list[str] = field(default_factory=list)
    post_ids: list[str] = field(default_factory=list)


@dataclass
class PostNode:
    id: str
    attachments: list[AttachmentNode] = field(default_factory=list)


@dataclass
class ThreadNode:
    """A persisted thread with everything the collector needs to judge it."""
    id: str
    board_code: str
    title: str | None
    content: str | None
    is_archived: bool
    watcher_ids: list[int] = field(default_factory=list)
    watcher_threads: list[WatcherThread] = field(default_factory=list)
    posts: list[PostNode] = field(default_factory=list)
    attachments: list[AttachmentNode] = field(default_factory=list)
