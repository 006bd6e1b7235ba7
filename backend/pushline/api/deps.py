import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pushline.config import settings
from pushline.services.push_service import NotificationDispatcher, WebPushSender, build_dispatcher
from pushline.services.registry import SubscriptionRegistry

security = HTTPBearer(auto_error=False)


def get_registry(request: Request) -> SubscriptionRegistry:
    """The registry built at startup (see main.lifespan)."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription registry not initialised",
        )
    return registry


def get_sender() -> WebPushSender:
    """Raises VapidConfigError (→ 503) when the sender identity is missing."""
    return WebPushSender.from_settings()


def get_dispatcher(
    registry: SubscriptionRegistry = Depends(get_registry),
    sender: WebPushSender = Depends(get_sender),
) -> NotificationDispatcher:
    return build_dispatcher(registry, sender)


def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """
    Guards operator endpoints (broadcast, subscription listing).
    Open when OPERATOR_TOKEN is empty; otherwise a matching bearer token is required.
    """
    if not settings.OPERATOR_TOKEN:
        return
    if credentials is None or not hmac.compare_digest(credentials.credentials, settings.OPERATOR_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator access required",
            headers={"WWW-Authenticate": "Bearer"},
        )
