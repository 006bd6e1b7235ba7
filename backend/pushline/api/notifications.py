"""
Notification broadcast.

POST /notifications  — {"send": true} broadcasts the configured test payload;
                       any other body is validated as a NotificationPayload.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError

from pushline.api.deps import get_dispatcher, require_operator
from pushline.config import settings
from pushline.schemas.push import DispatchResponse, NotificationPayload
from pushline.services.push_service import NotificationDispatcher

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _payload_from_body(body: dict[str, Any]) -> NotificationPayload:
    if body.get("send") is True and "title" not in body:
        return NotificationPayload(title=settings.BROADCAST_TITLE, body=settings.BROADCAST_BODY)
    try:
        return NotificationPayload.model_validate({k: v for k, v in body.items() if k != "send"})
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc


@router.post("", response_model=DispatchResponse, dependencies=[Depends(require_operator)])
async def send_notification(
    body: dict[str, Any] = Body(...),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchResponse:
    payload = _payload_from_body(body)
    results = await dispatcher.dispatch(payload)
    return DispatchResponse(results=results)
