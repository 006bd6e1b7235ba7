import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Display defaults applied by the worker to every push message. Server-side
# payloads only carry the fields that were explicitly set.
DEFAULT_NOTIFICATION: dict[str, Any] = {
    "title": "Default Title",
    "body": "Default body",
    "icon": "/icon-192x192.png",
    "badge": "/badge-72x72.png",
    "tag": "default",
    "requireInteraction": False,
    "actions": [],
}


class SubscriptionKeys(BaseModel):
    model_config = ConfigDict(frozen=True)

    p256dh: str = Field(..., min_length=1, max_length=255)
    auth: str = Field(..., min_length=1, max_length=255)


class PushSubscriptionData(BaseModel):
    """A browser push subscription as produced by ``PushSubscription.toJSON()``.

    Also the registry's record type: instances are immutable, so a record is
    either fully replaced or untouched.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    endpoint: str = Field(..., min_length=1, max_length=1000)
    keys: SubscriptionKeys

    @model_validator(mode="before")
    @classmethod
    def unwrap_legacy_envelope(cls, data: Any) -> Any:
        # Older clients posted {"subscribe": <subscription>}
        if isinstance(data, dict) and "endpoint" not in data and isinstance(data.get("subscribe"), dict):
            return data["subscribe"]
        return data

    @field_validator("endpoint")
    @classmethod
    def endpoint_is_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("endpoint must be an http(s) URL")
        return v

    def to_webpush_info(self) -> dict:
        """Shape expected by ``pywebpush.webpush(subscription_info=...)``."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.keys.p256dh, "auth": self.keys.auth},
        }


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: str | None = None


class NotificationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1)
    body: str | None = None
    icon: str | None = None
    badge: str | None = None
    tag: str | None = None
    require_interaction: bool | None = Field(default=None, alias="requireInteraction")
    actions: list[NotificationAction] | None = None
    data: dict[str, Any] | None = None

    def to_json(self) -> str:
        """Serialize with wire field names, omitting unset fields."""
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), separators=(",", ":"))


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    GONE = "gone"


class DeliveryResult(BaseModel):
    endpoint: str
    outcome: DeliveryOutcome
    reason: str | None = None
    status_code: int | None = None


class DispatchResponse(BaseModel):
    results: list[DeliveryResult]
