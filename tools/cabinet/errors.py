"""Exception hierarchy shared by every cabinet component."""

from __future__ import annotations


class CabinetError(Exception):
    """Base class for all cabinet errors."""


class ConfigError(CabinetError):
    """The configuration file is missing or invalid."""


class DuplicateWatcherError(ConfigError):
    """Two configured watchers share the same name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Watcher with name '{name}' declared more than once")
        self.name = name


class CrawlerError(CabinetError):
    """A crawler could not complete its watch pass."""


class JobError(CabinetError):
    """A queue job is malformed or of an unsupported kind."""


class StorageNotFoundError(CabinetError):
    """The requested object does not exist in the storage backend."""


class DownloadError(CabinetError):
    """The source answered a file download with a non-success status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
