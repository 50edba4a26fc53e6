"""4chan API client – rate-limited, retrying HTTP fetcher."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from .config import FourChanWatcherConfig

logger = logging.getLogger("cabinet.api")

USER_AGENT = "cabinet/0.1 (+https://github.com/cabinet-archive/cabinet)"


class FourChanAPI:
    """Thin wrapper around the 4chan JSON API with rate limiting."""

    def __init__(self, cfg: FourChanWatcherConfig) -> None:
        self.cfg = cfg
        self._last_request: float = 0.0
        self._throttle_lock = threading.Lock()
        cookies = {}
        if cfg.cloudflare:
            cookies["cf_clearance"] = cfg.cloudflare.clearance
            if cfg.cloudflare.bm:
                cookies["__cf_bm"] = cfg.cloudflare.bm
        self._client = httpx.Client(
            base_url=cfg.endpoint,
            timeout=cfg.timeout,
            headers={"User-Agent": USER_AGENT},
            cookies=cookies,
            follow_redirects=True,
        )

    # ── rate limiting ────────────────────────────────────────────
    def _throttle(self) -> None:
        with self._throttle_lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.cfg.request_delay:
                time.sleep(self.cfg.request_delay - elapsed)
            self._last_request = time.monotonic()

    def _get_json(self, path: str) -> Any:
        for attempt in range(1, self.cfg.max_retries + 1):
            self._throttle()
            try:
                resp = self._client.get(path)
                if resp.status_code == 404:
                    logger.warning("404: %s%s", self.cfg.endpoint, path)
                    return None
                resp.raise_for_status()
                return resp.json()
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, self.cfg.max_retries, path, exc)
                if attempt == self.cfg.max_retries:
                    raise
                time.sleep(2 ** attempt)
        return None  # unreachable but keeps mypy happy

    # ── public API ───────────────────────────────────────────────

    def get_boards(self) -> list[dict]:
        """Fetch all boards from boards.json."""
        data = self._get_json("/boards.json")
        return data.get("boards", []) if data else []

    def get_catalog(self, board: str) -> list[dict]:
        """Fetch the catalog for a board (pages with threads)."""
        data = self._get_json(f"/{board}/catalog.json")
        return data if data else []

    def get_thread(self, board: str, thread_no: int) -> dict | None:
        """Fetch a full thread (OP + all replies)."""
        return self._get_json(f"/{board}/thread/{thread_no}.json")

    def get_archive(self, board: str) -> list[int]:
        """Fetch the archive list for a board."""
        data = self._get_json(f"/{board}/archive.json")
        return data if data else []

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> FourChanAPI:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
