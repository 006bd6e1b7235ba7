"""
Browser-side subscription orchestration.

The manager registers the worker, asks for notification permission, obtains
a platform push subscription and hands it to the server registry. Local state
only flips to "subscribed" once the registry has accepted the subscription;
if submission fails the platform subscription is kept as
``pending_subscription`` and ``retry_submission()`` resends it (never
re-subscribe in that case).
"""

import base64
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import httpx

from pushline.schemas.push import PushSubscriptionData

logger = logging.getLogger(__name__)

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_DEFAULT = "default"


class PushNotSupportedError(RuntimeError):
    pass


class PermissionDeniedError(RuntimeError):
    pass


class RegistrySubmissionError(RuntimeError):
    pass


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


def url_base64_to_bytes(value: str) -> bytes:
    """Decode a URL-safe base64 string (padding optional), e.g. a VAPID public key."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class PushPlatform(ABC):
    """What the browser offers: permissions, worker registration, push manager."""

    supported: bool = True

    @abstractmethod
    async def permission(self) -> str: ...

    @abstractmethod
    async def request_permission(self) -> str: ...

    @abstractmethod
    async def register_worker(self, script_url: str, scope: str) -> None: ...

    @abstractmethod
    async def ready(self, scope: str) -> None:
        """Resolve once the worker for *scope* is activated."""

    @abstractmethod
    async def get_subscription(self, scope: str) -> Optional[PushSubscriptionData]: ...

    @abstractmethod
    async def subscribe(self, scope: str, application_server_key: bytes) -> PushSubscriptionData: ...

    @abstractmethod
    async def unsubscribe(self, scope: str) -> bool: ...


class RegistryApi:
    """HTTP client for the server-side subscription endpoints."""

    def __init__(self, client: httpx.AsyncClient, prefix: str = "/api") -> None:
        self._client = client
        self._prefix = prefix.rstrip("/")

    async def save(self, subscription: PushSubscriptionData) -> None:
        resp = await self._client.post(f"{self._prefix}/subscriptions", json=subscription.model_dump())
        resp.raise_for_status()

    async def delete(self, endpoint: str) -> None:
        resp = await self._client.request("DELETE", f"{self._prefix}/subscriptions", json={"endpoint": endpoint})
        resp.raise_for_status()

    async def vapid_public_key(self) -> str:
        resp = await self._client.get(f"{self._prefix}/vapid-public-key")
        resp.raise_for_status()
        return resp.json()["key"]


class SubscriptionManager:
    def __init__(
        self,
        platform: PushPlatform,
        api: RegistryApi,
        application_server_key: Optional[str] = None,
        script_url: str = "/sw.js",
        scope: str = "/",
    ) -> None:
        self.platform = platform
        self.api = api
        self.application_server_key = application_server_key
        self.script_url = script_url
        self.scope = scope
        self.state = SubscriptionState.UNSUBSCRIBED
        self.subscription: Optional[PushSubscriptionData] = None
        self.pending_subscription: Optional[PushSubscriptionData] = None

    @property
    def subscribed(self) -> bool:
        return self.state is SubscriptionState.SUBSCRIBED

    def _check_supported(self) -> None:
        if not self.platform.supported:
            raise PushNotSupportedError("Push notifications not supported in this browser.")

    async def load(self) -> None:
        """Register the worker and adopt an existing subscription, if any."""
        self._check_supported()
        await self.platform.register_worker(self.script_url, self.scope)
        existing = await self.platform.get_subscription(self.scope)
        if existing is not None:
            self.subscription = existing
            self.state = SubscriptionState.SUBSCRIBED
            logger.info("Adopted existing push subscription %s", existing.endpoint[:60])

    async def subscribe(self) -> PushSubscriptionData:
        self._check_supported()
        if self.subscribed and self.subscription is not None:
            return self.subscription
        if self.pending_subscription is not None:
            # the platform subscription exists; only the registry still lacks it
            return await self.retry_submission()

        permission = await self.platform.permission()
        if permission != PERMISSION_GRANTED:
            permission = await self.platform.request_permission()
        if permission != PERMISSION_GRANTED:
            raise PermissionDeniedError("Notification permission was not granted")

        await self.platform.ready(self.scope)
        key = self.application_server_key or await self.api.vapid_public_key()
        subscription = await self.platform.subscribe(self.scope, url_base64_to_bytes(key))
        await self._submit(subscription)
        return subscription

    async def retry_submission(self) -> PushSubscriptionData:
        """Resend a platform subscription the registry previously rejected."""
        if self.pending_subscription is None:
            raise RuntimeError("no pending subscription to submit")
        subscription = self.pending_subscription
        await self._submit(subscription)
        return subscription

    async def _submit(self, subscription: PushSubscriptionData) -> None:
        try:
            await self.api.save(subscription)
        except httpx.HTTPError as exc:
            self.pending_subscription = subscription
            self.state = SubscriptionState.UNSUBSCRIBED
            logger.warning("Registry rejected subscription %s: %s", subscription.endpoint[:60], exc)
            raise RegistrySubmissionError("Could not save the push subscription, try again") from exc
        self.pending_subscription = None
        self.subscription = subscription
        self.state = SubscriptionState.SUBSCRIBED
        logger.info("Subscribed to push notifications: %s", subscription.endpoint[:60])

    async def unsubscribe(self) -> None:
        """Revoke on the platform first; server removal is best-effort."""
        subscription = (
            self.subscription or self.pending_subscription or await self.platform.get_subscription(self.scope)
        )
        if subscription is not None:
            await self.platform.unsubscribe(self.scope)
            try:
                await self.api.delete(subscription.endpoint)
            except httpx.HTTPError as exc:
                logger.warning("Server-side unsubscribe failed for %s: %s", subscription.endpoint[:60], exc)
        self.subscription = None
        self.pending_subscription = None
        self.state = SubscriptionState.UNSUBSCRIBED
