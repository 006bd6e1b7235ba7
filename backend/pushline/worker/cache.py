"""
Named cache generations for the background worker.

Entries are keyed by absolute request URL and hold a response snapshot.
Every generation carries its own lock so concurrent fetch/install handlers
never observe a half-written entry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from pushline.worker.platform import Response, same_origin

logger = logging.getLogger(__name__)

CACHE_PREFIX = "pwa-cache-"

CACHEABLE_EXTENSIONS = frozenset(
    {
        ".html",
        ".css",
        ".js",
        ".json",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".svg",
        ".webp",
        ".ico",
        ".woff",
        ".woff2",
    }
)
NEVER_CACHED_PREFIXES = ("/api/", "/analytics")


def cache_name_for(version: str) -> str:
    return f"{CACHE_PREFIX}{version}"


def is_cacheable(url: str, origin: str) -> bool:
    """Whether a successful GET response for *url* may be stored.

    Cross-origin requests, API calls and analytics beacons are never cached.
    Extension-less paths are treated as documents.
    """
    if not same_origin(url, origin):
        return False
    path = urlsplit(url).path or "/"
    if path.startswith(NEVER_CACHED_PREFIXES):
        return False
    suffix = PurePosixPath(path).suffix.lower()
    return suffix == "" or suffix in CACHEABLE_EXTENSIONS


@dataclass(frozen=True)
class CacheEntry:
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    generation: str = ""

    def to_response(self) -> Response:
        return Response(status=self.status, headers=dict(self.headers), body=self.body)


class Cache:
    """A single cache generation."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def put(self, url: str, response: Response) -> CacheEntry:
        if not response.ok:
            raise ValueError(f"refusing to cache non-2xx response for {url} ({response.status})")
        entry = CacheEntry(
            url=url,
            status=response.status,
            headers=dict(response.headers),
            body=response.body,
            generation=self.name,
        )
        async with self._lock:
            self._entries[url] = entry
        return entry

    async def match(self, url: str) -> Optional[Response]:
        entry = self._entries.get(url)
        return entry.to_response() if entry else None

    async def delete(self, url: str) -> bool:
        async with self._lock:
            return self._entries.pop(url, None) is not None

    async def keys(self) -> List[str]:
        return list(self._entries)

    def entry(self, url: str) -> Optional[CacheEntry]:
        return self._entries.get(url)


class CacheStore:
    """Registry of cache generations (the platform's ``caches`` object)."""

    def __init__(self) -> None:
        self._caches: Dict[str, Cache] = {}
        self._lock = asyncio.Lock()

    async def open(self, name: str) -> Cache:
        async with self._lock:
            cache = self._caches.get(name)
            if cache is None:
                cache = self._caches[name] = Cache(name)
                logger.debug("Created cache generation %s", name)
            return cache

    async def keys(self) -> List[str]:
        return list(self._caches)

    async def delete(self, name: str) -> bool:
        async with self._lock:
            return self._caches.pop(name, None) is not None
