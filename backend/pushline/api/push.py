"""
Web Push subscription management.

GET    /subscriptions       — registry snapshot (operator)
POST   /subscriptions       — upsert a push subscription
DELETE /subscriptions       — remove a push subscription
GET    /vapid-public-key    — return the VAPID public key for frontend subscription
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from pushline.api.deps import get_registry, require_operator
from pushline.config import settings
from pushline.schemas.push import PushSubscriptionData, UnsubscribeRequest
from pushline.services.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["push"])


@router.get("/vapid-public-key")
async def get_vapid_public_key() -> dict:
    """Return the VAPID public key so the frontend can subscribe."""
    if not settings.VAPID_PUBLIC_KEY:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Push notifications not configured",
        )
    return {"key": settings.VAPID_PUBLIC_KEY}


@router.post("/subscriptions")
async def save_subscription(
    data: PushSubscriptionData,
    registry: SubscriptionRegistry = Depends(get_registry),
) -> dict:
    """Upsert a browser push subscription."""
    await registry.upsert(data)
    logger.info("Saved push subscription %s", data.endpoint[:60])
    return {"success": True}


@router.get("/subscriptions", response_model=list[PushSubscriptionData], dependencies=[Depends(require_operator)])
async def list_subscriptions(
    registry: SubscriptionRegistry = Depends(get_registry),
) -> list[PushSubscriptionData]:
    subscriptions = await registry.list()
    return sorted(subscriptions, key=lambda s: s.endpoint)


@router.delete("/subscriptions")
async def delete_subscription(
    data: UnsubscribeRequest,
    registry: SubscriptionRegistry = Depends(get_registry),
) -> dict:
    """Remove a push subscription. Unknown endpoints are not an error."""
    await registry.remove(data.endpoint)
    return {"success": True}
