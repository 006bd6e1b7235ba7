"""
The push worker script: what the background worker does on each event.

install            pre-cache the critical static URLs (each independently), then skip waiting
activate           drop every stale cache generation, then claim open windows
fetch              same-origin GET only; network first, cache fallback, offline page for navigations
push               parse the message, merge over the default notification, show it
notificationclick  close; unless "dismiss", focus a same-origin window or open one
message            {"type": "skip-waiting"} activates a waiting worker
sync               logged only

Recoverable failures are logged here and never propagate to the runtime.
"""

import asyncio
import logging
from typing import Any, Sequence
from urllib.parse import urljoin

from pushline.core import events
from pushline.schemas.push import DEFAULT_NOTIFICATION
from pushline.worker.cache import is_cacheable
from pushline.worker.lifecycle import (
    ActivateEvent,
    FetchEvent,
    InstallEvent,
    MessageEvent,
    NotificationClickEvent,
    PushEvent,
    ServiceWorker,
    SyncEvent,
)
from pushline.worker.platform import NetworkError, Request, Response, origin_of, same_origin

logger = logging.getLogger(__name__)

STATIC_CACHE_URLS = ("/", "/manifest.json")

OFFLINE_MARKER = "You're offline"
OFFLINE_HTML = f"""<!DOCTYPE html>
<html>
<head>
  <title>Offline</title>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    body {{ font-family: system-ui, sans-serif; text-align: center; padding: 50px; }}
    h1 {{ color: #666; }}
  </style>
</head>
<body>
  <h1>{OFFLINE_MARKER}</h1>
  <p>Please check your internet connection and try again.</p>
</body>
</html>"""


def offline_response() -> Response:
    return Response(
        status=200,
        headers={"Content-Type": "text/html"},
        body=OFFLINE_HTML.encode("utf-8"),
    )


class PushWorker:
    """Event handlers for one worker instance."""

    def __init__(
        self,
        worker: ServiceWorker,
        precache_urls: Sequence[str] = STATIC_CACHE_URLS,
        skip_waiting: bool = True,
    ) -> None:
        self.worker = worker
        self.precache_urls = tuple(precache_urls)
        self.skip_waiting = skip_waiting

    @classmethod
    def factory(cls, precache_urls: Sequence[str] = STATIC_CACHE_URLS, skip_waiting: bool = True):
        return lambda worker: cls(worker, precache_urls, skip_waiting)

    @property
    def platform(self):
        return self.worker.platform

    @property
    def origin(self) -> str:
        return origin_of(self.platform.origin)

    # ------------------------------------------------------------------
    # install
    # ------------------------------------------------------------------

    def on_install(self, event: InstallEvent) -> None:
        logger.info("Worker %s: installing", self.worker.version)
        event.wait_until(self._install())

    async def _install(self) -> None:
        cache = await self.platform.caches.open(self.worker.cache_name)
        outcomes = await asyncio.gather(
            *(self._precache_one(cache, path) for path in self.precache_urls),
            return_exceptions=True,
        )
        cached = 0
        for path, outcome in zip(self.precache_urls, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Worker %s: failed to pre-cache %s: %r", self.worker.version, path, outcome)
            elif outcome:
                cached += 1
        logger.info(
            "Worker %s: pre-cached %d/%d static URLs into %s",
            self.worker.version,
            cached,
            len(self.precache_urls),
            cache.name,
        )
        if self.skip_waiting:
            await self.worker.skip_waiting()

    async def _precache_one(self, cache, path: str) -> bool:
        url = urljoin(self.origin + "/", path)
        try:
            response = await self.platform.fetch(Request(url=url))
        except NetworkError as exc:
            logger.warning("Worker %s: failed to fetch %s: %s", self.worker.version, url, exc)
            return False
        if not response.ok:
            logger.warning("Worker %s: failed to cache %s: %s", self.worker.version, url, response.status)
            return False
        await cache.put(url, response)
        return True

    # ------------------------------------------------------------------
    # activate
    # ------------------------------------------------------------------

    def on_activate(self, event: ActivateEvent) -> None:
        logger.info("Worker %s: activating", self.worker.version)
        event.wait_until(self._activate())

    async def _activate(self) -> None:
        caches = self.platform.caches
        current = self.worker.cache_name
        for name in await caches.keys():
            if name != current:
                logger.info("Worker %s: deleting old cache %s", self.worker.version, name)
                await caches.delete(name)
        claimed = await self.platform.clients.claim(self.worker, self.worker.scope)
        logger.info("Worker %s: activation complete, controlling %d window(s)", self.worker.version, claimed)

    # ------------------------------------------------------------------
    # fetch
    # ------------------------------------------------------------------

    def on_fetch(self, event: FetchEvent) -> None:
        request = event.request
        if request.method.upper() != "GET":
            return
        if not request.url.startswith("http") or not same_origin(request.url, self.origin):
            return
        event.respond_with(self._network_first(event))

    async def _network_first(self, event: FetchEvent) -> Response:
        request = event.request
        try:
            response = await self.platform.fetch(request)
        except NetworkError as exc:
            logger.info("Worker %s: network unavailable for %s (%s)", self.worker.version, request.url, exc)
            return await self._from_cache(request, exc)

        if response.ok and is_cacheable(request.url, self.origin):
            event.wait_until(self._store(request.url, response.clone()))
        return response

    async def _from_cache(self, request: Request, exc: NetworkError) -> Response:
        cache = await self.platform.caches.open(self.worker.cache_name)
        cached = await cache.match(request.url)
        if cached is not None:
            return cached
        if request.is_navigation:
            return offline_response()
        raise NetworkError(f"no cache match for {request.url}") from exc

    async def _store(self, url: str, response: Response) -> None:
        try:
            cache = await self.platform.caches.open(self.worker.cache_name)
            await cache.put(url, response)
        except Exception as exc:
            logger.warning("Worker %s: could not cache %s: %s", self.worker.version, url, exc)

    # ------------------------------------------------------------------
    # push
    # ------------------------------------------------------------------

    def on_push(self, event: PushEvent) -> None:
        notification = dict(DEFAULT_NOTIFICATION)
        if event.data is not None:
            try:
                parsed = event.data.json()
                if not isinstance(parsed, dict):
                    raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
                notification.update(parsed)
            except ValueError as exc:
                logger.warning("Worker %s: error parsing push data: %s", self.worker.version, exc)
                notification["body"] = event.data.text() or notification["body"]
        event.wait_until(self._show(notification))

    async def _show(self, notification: dict[str, Any]) -> None:
        title = str(notification.get("title") or DEFAULT_NOTIFICATION["title"])
        try:
            await self.platform.notifications.show(
                title,
                body=notification.get("body"),
                icon=notification.get("icon"),
                badge=notification.get("badge"),
                tag=notification.get("tag"),
                requireInteraction=notification.get("requireInteraction", False),
                data=notification.get("data"),
                actions=notification.get("actions") or [],
            )
        except Exception as exc:
            logger.error("Worker %s: could not show notification %r: %s", self.worker.version, title, exc)

    # ------------------------------------------------------------------
    # notificationclick
    # ------------------------------------------------------------------

    def on_notificationclick(self, event: NotificationClickEvent) -> None:
        event.notification.close()
        if event.action == events.ACTION_DISMISS:
            return
        if event.action:
            logger.info("Worker %s: notification action clicked: %s", self.worker.version, event.action)
        data = event.notification.data if isinstance(event.notification.data, dict) else {}
        target = urljoin(self.origin + "/", data.get("url") or "/")
        event.wait_until(self._focus_or_open(target))

    async def _focus_or_open(self, target: str) -> None:
        clients = self.platform.clients
        try:
            windows = await clients.match_all(include_uncontrolled=True)
            candidates = [w for w in windows if same_origin(w.url, target)]
            # prefer a window that is already showing the target
            candidates.sort(key=lambda w: w.url != target)
            if candidates:
                window = candidates[0]
                if window.url != target:
                    window = await window.navigate(target)
                await window.focus()
                return
            await clients.open_window(target)
        except Exception as exc:
            logger.error("Worker %s: notification click handling failed: %s", self.worker.version, exc)

    # ------------------------------------------------------------------
    # message / sync
    # ------------------------------------------------------------------

    def on_message(self, event: MessageEvent) -> None:
        data = event.data
        if isinstance(data, dict) and data.get("type") == events.MSG_SKIP_WAITING:
            event.wait_until(self.worker.skip_waiting())
            return
        logger.debug("Worker %s: ignoring message %r", self.worker.version, data)

    def on_sync(self, event: SyncEvent) -> None:
        logger.info("Worker %s: background sync %s", self.worker.version, event.tag)
