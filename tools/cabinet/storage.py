"""Storage backends – keep attachment files on disk or in S3/MinIO."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator
from urllib.parse import urlparse

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from PIL import Image, UnidentifiedImageError

from .api import USER_AGENT
from .config import FileSystemStorageConfig, S3StorageConfig, StorageConfig
from .errors import DownloadError, StorageNotFoundError
from .models import RawAttachment

logger = logging.getLogger("cabinet.storage")

CHUNK_SIZE = 64 * 1024
SPOOL_SIZE = 8 * 1024 * 1024

# Map file extension → MIME type
MIME_MAP: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webm": "video/webm",
    ".mp4": "video/mp4",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".swf": "application/x-shockwave-flash",
}


@dataclass
class SaveResult:
    file_uri: str
    mime: str
    hash: str
    thumbnail_uri: str | None = None


# ── helpers ──────────────────────────────────────────────────────


def md5_base64(chunks: Iterator[bytes] | bytes) -> str:
    """MD5 digest encoded the way 4chan reports it (base64 of the raw digest)."""
    digest = hashlib.md5()
    if isinstance(chunks, (bytes, bytearray)):
        digest.update(chunks)
    else:
        for chunk in chunks:
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


def guess_mime(head: bytes, ext: str) -> str:
    """Sniff images with Pillow, fall back to the extension for everything else."""
    try:
        with Image.open(io.BytesIO(head)) as img:
            mime = img.get_format_mimetype()
            if mime:
                return mime
    except (UnidentifiedImageError, OSError, ValueError):
        pass
    return MIME_MAP.get(ext.lower(), "application/octet-stream")


def _download_headers(url: str, extra: dict[str, str] | None) -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Alt-Used": urlparse(url).netloc,
        "Upgrade-Insecure-Requests": "1",
        **(extra or {}),
    }


def _raise_for_download(resp: httpx.Response, url: str) -> None:
    if resp.is_success:
        return
    resp.read()
    raise DownloadError(resp.text or f"Download of {url} failed", resp.status_code)


class BaseStorage(ABC):
    name: str

    def __init__(self) -> None:
        self._client = httpx.Client(timeout=60.0, follow_redirects=True)

    @abstractmethod
    def initialize(self) -> None:
        ...

    @abstractmethod
    def save(self, attachment: RawAttachment) -> SaveResult:
        ...

    @abstractmethod
    def delete(self, file_uri: str | None = None, thumbnail_uri: str | None = None) -> None:
        ...

    @abstractmethod
    def exists(self, uri: str) -> bool:
        ...

    @abstractmethod
    def get_stream_of(self, uri: str, start: int | None = None, end: int | None = None) -> Iterator[bytes]:
        """Yield the object's bytes; ``start``/``end`` are inclusive offsets."""

    @abstractmethod
    def get_size_of(self, uri: str) -> int:
        ...

    @abstractmethod
    def get_hash_of(self, uri: str) -> str | None:
        ...

    def close(self) -> None:
        self._client.close()


# ── filesystem ───────────────────────────────────────────────────


class FileSystemStorage(BaseStorage):
    name = "filesystem"

    def __init__(self, cfg: FileSystemStorageConfig) -> None:
        super().__init__()
        self.cfg = cfg
        self.file_dir = Path(os.path.expanduser(cfg.file_path)).resolve()
        self.thumbnail_dir = Path(os.path.expanduser(cfg.thumbnail_path)).resolve()
        self._hashes: dict[str, str] = {}
        self._hash_lock = threading.Lock()

    def initialize(self) -> None:
        self.file_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnail_dir.mkdir(parents=True, exist_ok=True)

    def _download(self, url: str, target: Path, headers: dict[str, str] | None) -> None:
        partial = target.with_name(target.name + ".part")
        with self._client.stream("GET", url, headers=_download_headers(url, headers)) as resp:
            _raise_for_download(resp, url)
            with open(partial, "wb") as fh:
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    fh.write(chunk)
        os.replace(partial, target)

    def save(self, attachment: RawAttachment) -> SaveResult:
        file_path = self.file_dir / attachment.file_name
        thumb_path = self.thumbnail_dir / f"{attachment.created_at}s.jpg"

        self._download(attachment.url, file_path, attachment.headers)
        if attachment.thumbnail:
            self._download(attachment.thumbnail.url, thumb_path, attachment.thumbnail.headers)

        with open(file_path, "rb") as fh:
            head = fh.read(CHUNK_SIZE)
        file_hash = md5_base64(self._read_chunks(file_path))
        with self._hash_lock:
            self._hashes[str(file_path)] = file_hash

        return SaveResult(
            file_uri=str(file_path),
            mime=guess_mime(head, attachment.extension),
            hash=file_hash,
            thumbnail_uri=str(thumb_path) if attachment.thumbnail else None,
        )

    def delete(self, file_uri: str | None = None, thumbnail_uri: str | None = None) -> None:
        for uri in (file_uri, thumbnail_uri):
            if uri and os.path.exists(uri):
                os.remove(uri)
                with self._hash_lock:
                    self._hashes.pop(uri, None)

    def exists(self, uri: str) -> bool:
        return os.path.isfile(uri)

    @staticmethod
    def _read_chunks(path: str | Path, start: int | None = None, end: int | None = None) -> Iterator[bytes]:
        with open(path, "rb") as fh:
            if start:
                fh.seek(start)
            remaining = None if end is None else end - (start or 0) + 1
            while remaining is None or remaining > 0:
                chunk = fh.read(CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk

    def get_stream_of(self, uri: str, start: int | None = None, end: int | None = None) -> Iterator[bytes]:
        if not self.exists(uri):
            raise StorageNotFoundError(f"No such file: {uri}")
        return self._read_chunks(uri, start, end)

    def get_size_of(self, uri: str) -> int:
        try:
            return os.stat(uri).st_size
        except FileNotFoundError:
            raise StorageNotFoundError(f"No such file: {uri}") from None

    def get_hash_of(self, uri: str) -> str | None:
        with self._hash_lock:
            cached = self._hashes.get(uri)
        if cached:
            return cached
        if not self.exists(uri):
            return None
        file_hash = md5_base64(self._read_chunks(uri))
        with self._hash_lock:
            self._hashes[uri] = file_hash
        return file_hash


# ── S3 / MinIO ───────────────────────────────────────────────────


def parse_s3_uri(uri: str) -> tuple[str, str]:
    parsed = urlparse(uri)
    if parsed.scheme != "s3":
        raise ValueError(f'Invalid S3 URI "{uri}". It must start with "s3://".')
    return parsed.netloc, parsed.path.lstrip("/")


def _is_not_found(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code", "")
    return code in ("404", "NoSuchKey", "NotFound")


class S3Storage(BaseStorage):
    """Upload attachment files and thumbnails to MinIO / S3."""

    name = "s3"

    def __init__(self, cfg: S3StorageConfig, client: object | None = None) -> None:
        super().__init__()
        self.cfg = cfg
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=cfg.endpoint,
                region_name=cfg.region,
                aws_access_key_id=cfg.credentials.access_key_id if cfg.credentials else None,
                aws_secret_access_key=cfg.credentials.secret_access_key if cfg.credentials else None,
                config=BotoConfig(s3={"addressing_style": "path"} if cfg.endpoint else {}),
            )
        self._s3 = client

    def _ensure_bucket(self, bucket_uri: str) -> None:
        bucket, _ = parse_s3_uri(bucket_uri)
        try:
            self._s3.create_bucket(Bucket=bucket)
            self._s3.get_waiter("bucket_exists").wait(Bucket=bucket, WaiterConfig={"Delay": 1, "MaxAttempts": 10})
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "BucketAlreadyOwnedByYou":
                return
            if code == "BucketAlreadyExists":
                raise RuntimeError(
                    f'The bucket "{bucket}" already exists in another account. Bucket names must be globally unique.'
                ) from exc
            raise

        self._s3.put_public_access_block(
            Bucket=bucket,
            PublicAccessBlockConfiguration={"BlockPublicPolicy": False},
        )
        self._s3.put_bucket_policy(
            Bucket=bucket,
            Policy=json.dumps({
                "Version": "2012-10-17",
                "Statement": [{
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": "s3:GetObject",
                    "Resource": f"arn:aws:s3:::{bucket}/*",
                }],
            }),
        )
        logger.info("Created bucket: %s", bucket)

    def initialize(self) -> None:
        if self.cfg.ensure_bucket_exists:
            self._ensure_bucket(self.cfg.file_bucket_uri)
            self._ensure_bucket(self.cfg.thumbnail_bucket_uri)

    @staticmethod
    def _object_uri(bucket_uri: str, name: str) -> str:
        return f"{bucket_uri.rstrip('/')}/{name}"

    def _upload_from_url(self, url: str, destination: str, headers: dict[str, str] | None) -> tuple[str, str]:
        digest = hashlib.md5()
        bucket, key = parse_s3_uri(destination)
        # large files spill to disk instead of being held in memory
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE) as buf:
            with self._client.stream("GET", url, headers=_download_headers(url, headers)) as resp:
                _raise_for_download(resp, url)
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    digest.update(chunk)
                    buf.write(chunk)
            buf.seek(0)
            mime = guess_mime(buf.read(CHUNK_SIZE), os.path.splitext(destination)[1])
            buf.seek(0)
            self._s3.put_object(Bucket=bucket, Key=key, Body=buf, ContentType=mime)
        return mime, base64.b64encode(digest.digest()).decode("ascii")

    def save(self, attachment: RawAttachment) -> SaveResult:
        file_uri = self._object_uri(self.cfg.file_bucket_uri, attachment.file_name)
        thumbnail_uri = self._object_uri(self.cfg.thumbnail_bucket_uri, f"{attachment.created_at}s.jpg")

        mime, file_hash = self._upload_from_url(attachment.url, file_uri, attachment.headers)
        if attachment.thumbnail:
            self._upload_from_url(attachment.thumbnail.url, thumbnail_uri, attachment.thumbnail.headers)

        return SaveResult(
            file_uri=file_uri,
            mime=mime,
            hash=file_hash,
            thumbnail_uri=thumbnail_uri if attachment.thumbnail else None,
        )

    def _delete_object(self, uri: str) -> None:
        bucket, key = parse_s3_uri(uri)
        try:
            self._s3.delete_object(Bucket=bucket, Key=key)
            self._s3.get_waiter("object_not_exists").wait(
                Bucket=bucket, Key=key, WaiterConfig={"Delay": 1, "MaxAttempts": 10}
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "NoSuchBucket":
                raise RuntimeError(
                    f"Error from S3 while deleting object from {bucket}. The bucket doesn't exist."
                ) from exc
            raise

    def delete(self, file_uri: str | None = None, thumbnail_uri: str | None = None) -> None:
        if file_uri:
            self._delete_object(file_uri)
        if thumbnail_uri:
            self._delete_object(thumbnail_uri)

    def exists(self, uri: str) -> bool:
        bucket, key = parse_s3_uri(uri)
        if self.cfg.bypass_exists_check:
            return True
        try:
            self._s3.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise

    def get_stream_of(self, uri: str, start: int | None = None, end: int | None = None) -> Iterator[bytes]:
        bucket, key = parse_s3_uri(uri)
        kwargs = {"Bucket": bucket, "Key": key}
        if start is not None and end is not None:
            kwargs["Range"] = f"bytes={start}-{end}"
        try:
            item = self._s3.get_object(**kwargs)
        except ClientError as exc:
            if _is_not_found(exc):
                raise StorageNotFoundError(f'No such key "{key}" in bucket "{bucket}"') from exc
            raise
        return item["Body"].iter_chunks(CHUNK_SIZE)

    def get_size_of(self, uri: str) -> int:
        bucket, key = parse_s3_uri(uri)
        try:
            response = self._s3.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise StorageNotFoundError(f'No such key "{key}" in bucket "{bucket}"') from exc
            raise
        return response["ContentLength"]

    def get_hash_of(self, uri: str) -> str | None:
        try:
            return md5_base64(self.get_stream_of(uri))
        except StorageNotFoundError:
            return None


STORAGES: dict[str, Callable[..., BaseStorage]] = {
    "filesystem": FileSystemStorage,
    "s3": S3Storage,
}


def create_storage(cfg: StorageConfig) -> BaseStorage:
    storage_cls = STORAGES.get(cfg.type)
    if storage_cls is None:
        raise ValueError(f"Unsupported storage type: {cfg.type}")
    return storage_cls(cfg)
