"""
Platform collaborators the background worker talks to.

The worker never touches the network, the notification tray or browser
windows directly; it goes through the objects defined here, which are
bundled into a ``WorkerPlatform`` and injected into each registration.

  Request / Response   minimal fetch primitives (bodies are bytes)
  HttpxFetcher         network access backed by httpx
  NotificationCenter   the system notification tray
  Clients              open window clients within the origin
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """The network request could not be completed (offline, DNS, reset…)."""


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def same_origin(url: str, origin: str) -> bool:
    return origin_of(url) == origin_of(origin)


# ---------------------------------------------------------------------------
# Fetch primitives
# ---------------------------------------------------------------------------


@dataclass
class Request:
    url: str
    method: str = "GET"
    mode: str = "cors"  # "navigate" for top-level page loads
    destination: str = ""  # "document" for top-level page loads
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate" or self.destination == "document"


@dataclass
class Response:
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def clone(self) -> "Response":
        return Response(status=self.status, headers=dict(self.headers), body=self.body)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


Fetcher = Callable[[Request], Awaitable[Response]]


class HttpxFetcher:
    """Performs worker network requests with an ``httpx.AsyncClient``.

    Transport failures surface as ``NetworkError``; HTTP error statuses are
    ordinary responses, exactly like the platform's fetch().
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def aclose(self) -> None:
        """Close the underlying client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __call__(self, request: Request) -> Response:
        try:
            resp = await self._client.request(request.method, request.url, headers=request.headers)
        except httpx.RequestError as exc:
            raise NetworkError(f"{request.method} {request.url} failed: {exc}") from exc
        return Response(status=resp.status_code, headers=dict(resp.headers), body=resp.content)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class Notification:
    title: str
    body: str = ""
    icon: Optional[str] = None
    badge: Optional[str] = None
    tag: str = ""
    require_interaction: bool = False
    actions: list[dict] = field(default_factory=list)
    data: Any = None
    closed: bool = False

    def close(self) -> None:
        self.closed = True


class NotificationCenter:
    """In-process notification tray.

    A notification with the same non-empty tag replaces the previous one.
    """

    def __init__(self) -> None:
        self._notifications: list[Notification] = []

    async def show(self, title: str, **options: Any) -> Notification:
        notification = Notification(
            title=title,
            body=options.get("body") or "",
            icon=options.get("icon"),
            badge=options.get("badge"),
            tag=options.get("tag") or "",
            require_interaction=bool(options.get("requireInteraction", False)),
            actions=list(options.get("actions") or []),
            data=options.get("data"),
        )
        if notification.tag:
            for previous in self.visible():
                if previous.tag == notification.tag:
                    previous.close()
        self._notifications.append(notification)
        logger.debug("Notification shown: %r (tag=%s)", title, notification.tag or "-")
        return notification

    def visible(self) -> list[Notification]:
        return [n for n in self._notifications if not n.closed]

    @property
    def history(self) -> list[Notification]:
        return list(self._notifications)


# ---------------------------------------------------------------------------
# Window clients
# ---------------------------------------------------------------------------


@dataclass
class WindowClient:
    url: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    focused: bool = False
    controller: Any = None

    async def focus(self) -> "WindowClient":
        self.focused = True
        return self

    async def navigate(self, url: str) -> "WindowClient":
        self.url = url
        return self


class Clients:
    """The set of browser windows open on the origin."""

    def __init__(self, windows: Optional[list[WindowClient]] = None) -> None:
        self._windows: list[WindowClient] = list(windows or [])

    def add(self, window: WindowClient) -> WindowClient:
        self._windows.append(window)
        return window

    def close(self, window: WindowClient) -> None:
        self._windows = [w for w in self._windows if w.id != window.id]

    async def match_all(self, include_uncontrolled: bool = False) -> list[WindowClient]:
        if include_uncontrolled:
            return list(self._windows)
        return [w for w in self._windows if w.controller is not None]

    async def open_window(self, url: str) -> WindowClient:
        for w in self._windows:
            w.focused = False
        window = WindowClient(url=url, focused=True)
        self._windows.append(window)
        logger.info("Opened new window at %s", url)
        return window

    async def claim(self, worker: Any, scope: str) -> int:
        """Make *worker* the controller of every window within *scope*."""
        claimed = 0
        for w in self._windows:
            if w.url.startswith(scope):
                w.controller = worker
                claimed += 1
        return claimed

    def controlled_by(self, worker: Any) -> list[WindowClient]:
        return [w for w in self._windows if w.controller is worker]


# ---------------------------------------------------------------------------
# Push message data
# ---------------------------------------------------------------------------


class PushMessageData:
    """Raw bytes of an inbound push message."""

    def __init__(self, raw: bytes | str | dict) -> None:
        if isinstance(raw, dict):
            raw = json.dumps(raw)
        self._raw = raw.encode() if isinstance(raw, str) else raw

    def text(self) -> str:
        return self._raw.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())


@dataclass
class WorkerPlatform:
    origin: str
    fetch: Fetcher
    caches: Any  # pushline.worker.cache.CacheStore
    notifications: NotificationCenter = field(default_factory=NotificationCenter)
    clients: Clients = field(default_factory=Clients)
