from fastapi import APIRouter, Depends

from pushline.api.deps import get_registry
from pushline.config import settings
from pushline.services.registry import SubscriptionRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(registry: SubscriptionRegistry = Depends(get_registry)) -> dict:
    push_configured = bool(settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY)
    try:
        count = await registry.count()
        return {"status": "healthy", "registry": "connected", "subscriptions": count, "push_configured": push_configured}
    except Exception as exc:
        return {"status": "unhealthy", "registry": "disconnected", "error": str(exc), "push_configured": push_configured}
