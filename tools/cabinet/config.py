"""Configuration and environment settings for cabinet."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Union
from urllib.parse import urlparse

from croniter import croniter

from .errors import ConfigError

logger = logging.getLogger("cabinet.config")

DEFAULT_CONFIG_PATH = "cabinet.config.json"


def _require(data: dict, key: str, where: str) -> Any:
    if key not in data:
        raise ConfigError(f"Missing required key '{key}' in {where}")
    return data[key]


def _expect(value: Any, kind: type | tuple[type, ...], where: str) -> Any:
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool is an int subclass
    if not isinstance(value, kinds) or (isinstance(value, bool) and bool not in kinds):
        raise ConfigError(f"{where} has an invalid value: {value!r}")
    return value


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "cabinet"
    user: str = "cabinet"
    password: str = "cabinet"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "cabinet"),
            user=os.getenv("DB_USER", "cabinet"),
            password=os.getenv("DB_PASSWORD", "cabinet"),
        )


# ── storage ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class FileSystemStorageConfig:
    file_path: str
    thumbnail_path: str
    type: str = "filesystem"

    @classmethod
    def from_dict(cls, data: dict) -> FileSystemStorageConfig:
        return cls(
            file_path=_expect(_require(data, "file_path", "storage"), str, "storage.file_path"),
            thumbnail_path=_expect(_require(data, "thumbnail_path", "storage"), str, "storage.thumbnail_path"),
        )


@dataclass(frozen=True)
class S3Credentials:
    access_key_id: str
    secret_access_key: str


@dataclass(frozen=True)
class S3StorageConfig:
    """S3 / MinIO storage.  Bucket URIs look like ``s3://bucket/optional/prefix``."""
    file_bucket_uri: str
    thumbnail_bucket_uri: str
    endpoint: str | None = None
    region: str | None = None
    credentials: S3Credentials | None = None
    ensure_bucket_exists: bool = False
    bypass_exists_check: bool = False
    type: str = "s3"

    @classmethod
    def from_dict(cls, data: dict) -> S3StorageConfig:
        uris = {}
        for key in ("file_bucket_uri", "thumbnail_bucket_uri"):
            uri = _expect(_require(data, key, "storage"), str, f"storage.{key}")
            if urlparse(uri).scheme != "s3" or not urlparse(uri).netloc:
                raise ConfigError(f"storage.{key} must be an s3:// URI, got {uri!r}")
            uris[key] = uri

        credentials = None
        if data.get("credentials"):
            creds = data["credentials"]
            access_key = _expect(_require(creds, "access_key_id", "storage.credentials"), str, "access_key_id")
            secret_key = _expect(_require(creds, "secret_access_key", "storage.credentials"), str, "secret_access_key")
            if not access_key or not secret_key:
                raise ConfigError("S3 credentials cannot be empty")
            credentials = S3Credentials(access_key, secret_key)

        return cls(
            file_bucket_uri=uris["file_bucket_uri"],
            thumbnail_bucket_uri=uris["thumbnail_bucket_uri"],
            endpoint=data.get("endpoint"),
            region=data.get("region"),
            credentials=credentials,
            ensure_bucket_exists=bool(data.get("ensure_bucket_exists", False)),
            bypass_exists_check=bool(data.get("bypass_exists_check", False)),
        )


StorageConfig = Union[FileSystemStorageConfig, S3StorageConfig]

STORAGE_CONFIG_TYPES: dict[str, Callable[[dict], StorageConfig]] = {
    "filesystem": FileSystemStorageConfig.from_dict,
    "s3": S3StorageConfig.from_dict,
}


# ── watchers ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class QueryItem:
    """A single text or regex query of a watcher entry."""
    query: str
    type: str = "text"
    exclude: bool = False
    case_insensitive: bool = False
    # regex flags
    ignore_case: bool = False
    multiline: bool = False
    dot_all: bool = False
    unicode: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> QueryItem:
        kind = data.get("type", "text")
        if kind not in ("text", "regex"):
            raise ConfigError(f"Unknown query type '{kind}'")
        return cls(
            query=_expect(_require(data, "query", "query item"), str, "query"),
            type=kind,
            exclude=bool(data.get("exclude", False)),
            case_insensitive=bool(data.get("case_insensitive", False)),
            ignore_case=bool(data.get("ignore_case", False)),
            multiline=bool(data.get("multiline", False)),
            dot_all=bool(data.get("dot_all", False)),
            unicode=bool(data.get("unicode", False)),
        )


@dataclass(frozen=True)
class WatcherEntry:
    boards: tuple[str, ...]
    queries: tuple[QueryItem, ...]
    target: str = "both"
    search_archive: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> WatcherEntry:
        target = data.get("target", "both")
        if target not in ("title", "content", "both"):
            raise ConfigError(f"Entry target must be title, content or both, got {target!r}")
        boards = _expect(_require(data, "boards", "watcher entry"), list, "entry.boards")
        queries = _expect(_require(data, "queries", "watcher entry"), list, "entry.queries")
        return cls(
            boards=tuple(str(b) for b in boards),
            queries=tuple(QueryItem.from_dict(q) for q in queries),
            target=target,
            search_archive=bool(data.get("search_archive", False)),
        )


@dataclass(frozen=True)
class CloudflareConfig:
    clearance: str
    bm: str | None = None


@dataclass(frozen=True)
class FourChanWatcherConfig:
    """One configured 4chan watcher.  Respects the 1-request-per-second guideline."""
    name: str
    entries: tuple[WatcherEntry, ...]
    endpoint: str = "https://a.4cdn.org"
    image_endpoint: str = "https://i.4cdn.org"
    cloudflare: CloudflareConfig | None = None
    request_delay: float = 1.1  # seconds between API requests
    max_retries: int = 3
    timeout: float = 30.0
    type: str = "four-chan"

    @classmethod
    def from_dict(cls, data: dict) -> FourChanWatcherConfig:
        cloudflare = None
        if data.get("cloudflare"):
            cf = data["cloudflare"]
            cloudflare = CloudflareConfig(
                clearance=_expect(_require(cf, "clearance", "cloudflare"), str, "cloudflare.clearance"),
                bm=cf.get("bm"),
            )
        entries = _expect(_require(data, "entries", "watcher"), list, "watcher.entries")
        return cls(
            name=_expect(_require(data, "name", "watcher"), str, "watcher.name"),
            entries=tuple(WatcherEntry.from_dict(e) for e in entries),
            endpoint=data.get("endpoint", "https://a.4cdn.org"),
            image_endpoint=data.get("image_endpoint", "https://i.4cdn.org"),
            cloudflare=cloudflare,
            request_delay=float(data.get("request_delay", 1.1)),
            max_retries=int(data.get("max_retries", 3)),
            timeout=float(data.get("timeout", 30.0)),
        )

    def to_dict(self) -> dict:
        """Plain representation stored alongside the watcher row."""
        return {
            "name": self.name,
            "type": self.type,
            "endpoint": self.endpoint,
            "entries": [
                {
                    "boards": list(e.boards),
                    "target": e.target,
                    "search_archive": e.search_archive,
                    "queries": [q.__dict__ for q in e.queries],
                }
                for e in self.entries
            ],
        }


WatcherConfig = FourChanWatcherConfig

WATCHER_CONFIG_TYPES: dict[str, Callable[[dict], WatcherConfig]] = {
    "four-chan": FourChanWatcherConfig.from_dict,
}


# ── top level ────────────────────────────────────────────────────


@dataclass(frozen=True)
class DownloadThrottle:
    download: int = 1000  # ms slept after every successful download
    failover: int = 60000  # ms slept after a 429 before retrying


@dataclass(frozen=True)
class AttachmentConfig:
    download_throttle: DownloadThrottle = field(default_factory=DownloadThrottle)
    hash_check: bool = False


@dataclass(frozen=True)
class CrawlingConfig:
    interval: int | str = 600000  # ms, or a cron expression
    delete_obsolete: bool = False
    watcher_sync: str = "keep"


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int = 1
    poll_interval: float = 1.0  # seconds


@dataclass(frozen=True)
class CabinetConfig:
    storage: StorageConfig
    watchers: tuple[WatcherConfig, ...] = ()
    attachment: AttachmentConfig = field(default_factory=AttachmentConfig)
    crawling: CrawlingConfig = field(default_factory=CrawlingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def from_dict(cls, data: dict) -> CabinetConfig:
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be an object")

        storage_data = _expect(_require(data, "storage", "configuration"), dict, "storage")
        storage_type = storage_data.get("type")
        if storage_type not in STORAGE_CONFIG_TYPES:
            raise ConfigError(f"Unsupported storage type: {storage_type!r}")
        storage = STORAGE_CONFIG_TYPES[storage_type](storage_data)

        watchers = []
        for item in _expect(data.get("watchers", []), list, "watchers"):
            kind = item.get("type")
            if kind not in WATCHER_CONFIG_TYPES:
                raise ConfigError(f"Unknown watcher configuration type '{kind}'")
            watchers.append(WATCHER_CONFIG_TYPES[kind](item))

        att = data.get("attachment", {})
        throttle = att.get("download_throttle", {})
        attachment = AttachmentConfig(
            download_throttle=DownloadThrottle(
                download=_expect(throttle.get("download", 1000), int, "download_throttle.download"),
                failover=_expect(throttle.get("failover", 60000), int, "download_throttle.failover"),
            ),
            hash_check=bool(att.get("hash_check", False)),
        )

        crawl = data.get("crawling", {})
        interval = _expect(crawl.get("interval", 600000), (int, str), "crawling.interval")
        if isinstance(interval, int) and interval <= 0:
            raise ConfigError("crawling.interval must be a positive number of milliseconds")
        if isinstance(interval, str) and not croniter.is_valid(interval):
            raise ConfigError(f"crawling.interval is not a valid cron expression: {interval!r}")
        watcher_sync = crawl.get("watcher_sync", "keep")
        if watcher_sync not in ("reset", "keep"):
            raise ConfigError(f"crawling.watcher_sync must be reset or keep, got {watcher_sync!r}")
        crawling = CrawlingConfig(
            interval=interval,
            delete_obsolete=bool(crawl.get("delete_obsolete", False)),
            watcher_sync=watcher_sync,
        )

        q = data.get("queue", {})
        queue = QueueConfig(
            concurrency=int(q.get("concurrency", 1)),
            poll_interval=float(q.get("poll_interval", 1.0)),
        )

        return cls(
            storage=storage,
            watchers=tuple(watchers),
            attachment=attachment,
            crawling=crawling,
            queue=queue,
        )


class ConfigProvider:
    """Holds the current configuration and tells listeners when it changes."""

    def __init__(self, path: str | os.PathLike | None = None) -> None:
        self.path = Path(path or os.getenv("CABINET_CONFIG", DEFAULT_CONFIG_PATH))
        self._config: CabinetConfig | None = None
        self._listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CabinetConfig) -> ConfigProvider:
        provider = cls()
        provider._config = config
        return provider

    @property
    def config(self) -> CabinetConfig:
        if self._config is None:
            raise ConfigError("Config is not loaded properly")
        return self._config

    @property
    def storage(self) -> StorageConfig:
        return self.config.storage

    @property
    def attachment(self) -> AttachmentConfig:
        return self.config.attachment

    @property
    def crawling(self) -> CrawlingConfig:
        return self.config.crawling

    @property
    def watchers(self) -> tuple[WatcherConfig, ...]:
        return self.config.watchers

    def load(self) -> CabinetConfig:
        if not self.path.exists():
            raise ConfigError(f"Config file not found: {self.path}")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {self.path} is not valid JSON: {exc}") from exc
        config = CabinetConfig.from_dict(data)
        with self._lock:
            self._config = config
        return config

    def on_change(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def off_change(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def replace(self, config: CabinetConfig) -> None:
        """Swap in an already-validated configuration and notify listeners."""
        with self._lock:
            self._config = config
        self._emit_change()

    def reload(self) -> bool:
        """Re-read the file; listeners only hear about valid configurations."""
        logger.warning("Server configuration changed, reloading configuration...")
        try:
            self.load()
        except ConfigError as exc:
            logger.error("Failed to load configuration file: %s", exc)
            return False
        logger.info("Reloaded server configuration file successfully.")
        self._emit_change()
        return True

    def _emit_change(self) -> None:
        for listener in list(self._listeners):
            listener()
