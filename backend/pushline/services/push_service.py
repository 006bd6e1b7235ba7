"""
Web Push delivery service.

Uses pywebpush to send a payload to every registered subscription
concurrently. Each recipient is classified independently:

  delivered   the push service accepted the message
  gone        the push service answered 404/410; the subscription is removed
  failed      anything else (kept: the error may be transient)

One recipient's failure never affects another's, and dispatch() always
returns one result per subscription present when it started.
"""

import asyncio
import logging
from functools import partial
from typing import Dict, List, Optional

import anyio
from pywebpush import WebPushException, webpush

from pushline.config import settings
from pushline.schemas.push import (
    DeliveryOutcome,
    DeliveryResult,
    NotificationPayload,
    PushSubscriptionData,
)
from pushline.services.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

GONE_STATUSES = (404, 410)


class VapidConfigError(RuntimeError):
    """VAPID sender identity is missing, so no delivery can succeed."""


class PayloadTooLargeError(ValueError):
    """Serialized payload exceeds what the push service accepts."""


class WebPushSender:
    """Sends one encrypted push message with the configured VAPID identity."""

    def __init__(
        self,
        vapid_private_key: str,
        vapid_claims_email: str,
        ttl: int = 86_400,
        max_payload_bytes: int = 3993,
    ) -> None:
        if not vapid_private_key:
            raise VapidConfigError("VAPID_PRIVATE_KEY is not configured")
        if not vapid_claims_email:
            raise VapidConfigError("VAPID_CLAIMS_EMAIL is not configured")
        self.vapid_private_key = vapid_private_key
        self.vapid_claims_email = vapid_claims_email
        self.ttl = ttl
        self.max_payload_bytes = max_payload_bytes

    @classmethod
    def from_settings(cls) -> "WebPushSender":
        if not settings.VAPID_PUBLIC_KEY:
            raise VapidConfigError("VAPID_PUBLIC_KEY is not configured")
        return cls(
            vapid_private_key=settings.VAPID_PRIVATE_KEY,
            vapid_claims_email=settings.VAPID_CLAIMS_EMAIL,
            ttl=settings.PUSH_TTL,
            max_payload_bytes=settings.PUSH_PAYLOAD_MAX_BYTES,
        )

    async def send(self, subscription: PushSubscriptionData, data: str) -> None:
        """Deliver *data*; raises WebPushException / PayloadTooLargeError on failure."""
        size = len(data.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise PayloadTooLargeError(f"payload too large: {size} bytes, limit is {self.max_payload_bytes}")
        # pywebpush fills "aud"/"exp" into the claims dict, so build a fresh one per call
        call = partial(
            webpush,
            subscription_info=subscription.to_webpush_info(),
            data=data,
            vapid_private_key=self.vapid_private_key,
            vapid_claims={"sub": self.vapid_claims_email},
            ttl=self.ttl,
        )
        await anyio.to_thread.run_sync(call, abandon_on_cancel=True)


def _status_of(exc: WebPushException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) if response is not None else None


class NotificationDispatcher:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        sender: WebPushSender,
        concurrency: int = 50,
        timeout: Optional[float] = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._registry = registry
        self._sender = sender
        self._concurrency = concurrency
        self._timeout = timeout or None

    async def dispatch(self, payload: NotificationPayload) -> List[DeliveryResult]:
        """Send *payload* to every subscription in the registry.

        The timeout bounds delivery attempts only. Outcomes are recorded the
        moment they are classified, and removals of gone endpoints are awaited
        to completion even when the timeout fires.
        """
        subscriptions = await self._registry.list()
        if not subscriptions:
            logger.info("No push subscriptions registered — nothing to send")
            return []

        data = payload.to_json()
        logger.info("Dispatching %r to %d subscription(s)", payload.title, len(subscriptions))

        semaphore = asyncio.Semaphore(self._concurrency)
        outcomes: Dict[int, DeliveryResult] = {}
        removals: List[asyncio.Task] = []
        tasks = [
            asyncio.create_task(self._deliver(index, sub, data, semaphore, outcomes, removals))
            for index, sub in enumerate(subscriptions)
        ]
        _, pending = await asyncio.wait(tasks, timeout=self._timeout)
        if pending:
            logger.warning("Dispatch timed out after %ss with %d attempt(s) pending", self._timeout, len(pending))
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)
        if removals:
            await asyncio.gather(*removals)

        results = []
        for index, sub in enumerate(subscriptions):
            result = outcomes.get(index)
            if result is None:
                result = DeliveryResult(endpoint=sub.endpoint, outcome=DeliveryOutcome.FAILED, reason="timed out")
            results.append(result)

        counts = {outcome: sum(1 for r in results if r.outcome is outcome) for outcome in DeliveryOutcome}
        logger.info(
            "Dispatch complete: %d delivered, %d failed, %d gone",
            counts[DeliveryOutcome.DELIVERED],
            counts[DeliveryOutcome.FAILED],
            counts[DeliveryOutcome.GONE],
        )
        return results

    async def _deliver(
        self,
        index: int,
        sub: PushSubscriptionData,
        data: str,
        semaphore: asyncio.Semaphore,
        outcomes: Dict[int, DeliveryResult],
        removals: List[asyncio.Task],
    ) -> None:
        async with semaphore:
            result = await self._attempt(sub, data)
        outcomes[index] = result
        if result.outcome is DeliveryOutcome.GONE:
            # Runs outside this task so the dispatch timeout cannot cancel it
            removals.append(asyncio.create_task(self._remove_gone(sub.endpoint)))

    async def _remove_gone(self, endpoint: str) -> None:
        try:
            await self._registry.remove(endpoint)
        except Exception as exc:
            logger.warning("Could not remove expired subscription %s: %s", endpoint[:60], exc)

    async def _attempt(self, sub: PushSubscriptionData, data: str) -> DeliveryResult:
        try:
            await self._sender.send(sub, data)
        except WebPushException as exc:
            status = _status_of(exc)
            if status in GONE_STATUSES:
                logger.info("Push endpoint gone (%s), removing subscription %s", status, sub.endpoint[:60])
                return DeliveryResult(
                    endpoint=sub.endpoint,
                    outcome=DeliveryOutcome.GONE,
                    reason=f"push service returned {status}",
                    status_code=status,
                )
            logger.warning("Push delivery failed for %s: %s (status: %s)", sub.endpoint[:60], exc, status or "N/A")
            return DeliveryResult(endpoint=sub.endpoint, outcome=DeliveryOutcome.FAILED, reason=str(exc), status_code=status)
        except Exception as exc:
            # Crypto/key errors and transport failures that aren't WebPushException
            logger.warning("Unexpected push error for %s: %s", sub.endpoint[:60], exc)
            return DeliveryResult(endpoint=sub.endpoint, outcome=DeliveryOutcome.FAILED, reason=str(exc) or type(exc).__name__)
        return DeliveryResult(endpoint=sub.endpoint, outcome=DeliveryOutcome.DELIVERED)


def build_dispatcher(registry: SubscriptionRegistry, sender: Optional[WebPushSender] = None) -> NotificationDispatcher:
    """Dispatcher wired from settings; raises VapidConfigError when unconfigured."""
    return NotificationDispatcher(
        registry,
        sender or WebPushSender.from_settings(),
        concurrency=settings.DISPATCH_CONCURRENCY,
        timeout=settings.DISPATCH_TIMEOUT_SECONDS,
    )
