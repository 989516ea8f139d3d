from __future__ import annotations

import base64
import hashlib
import json
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from email.utils import formatdate, parsedate_to_datetime
from typing import Any

from flask import Request, Response, current_app


@dataclass
class CacheEntry:
    data: str
    timestamp: float
    etag: str


def compute_etag(body: str) -> str:
    digest = hashlib.sha256(body.encode("utf-8")).digest()
    return '"' + base64.b64encode(digest).decode("ascii")[:16] + '"'


def cache_key(params: Mapping[str, Any]) -> str:
    return json.dumps(dict(params), sort_keys=True, default=str, separators=(",", ":"))


class ResponseCache:
    """
    Process-local memo of serialized JSON responses keyed by query parameters.

    Entries expire after `ttl` seconds (dropped when next read) or all at once
    on `clear()`. There is no size bound.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time):
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.timestamp >= self.ttl:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, body: str) -> CacheEntry:
        entry = CacheEntry(data=body, timestamp=self._clock(), etag=compute_etag(body))
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def is_not_modified(req: Request, entry: CacheEntry) -> bool:
    inm = req.headers.get("If-None-Match")
    if inm:
        tags = {t.strip() for t in inm.split(",")}
        return "*" in tags or entry.etag in tags
    ims = req.headers.get("If-Modified-Since")
    if ims:
        try:
            since = parsedate_to_datetime(ims).timestamp()
        except (TypeError, ValueError):
            return False
        return int(since) >= int(entry.timestamp)
    return False


def cached_json_response(
    cache: ResponseCache,
    req: Request,
    params: Mapping[str, Any],
    build: Callable[[], dict],
) -> Response:
    """Serve `build()` through the cache, answering conditional GETs with 304."""
    key = cache_key(params)
    entry = cache.get(key)
    hit = entry is not None
    if entry is None:
        entry = cache.set(key, json.dumps(build(), default=str, ensure_ascii=False))

    headers = {
        "ETag": entry.etag,
        "Last-Modified": formatdate(entry.timestamp, usegmt=True),
        "Cache-Control": f"public, max-age={int(cache.ttl)}",
    }
    if is_not_modified(req, entry):
        return Response(status=304, headers=headers)

    headers["X-Cache"] = "HIT" if hit else "MISS"
    return Response(entry.data, status=200, mimetype="application/json", headers=headers)


def product_cache() -> ResponseCache:
    return current_app.extensions["product_cache"]


def clear_product_cache() -> None:
    product_cache().clear()
    current_app.logger.debug("Product listing cache cleared")
