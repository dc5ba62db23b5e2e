import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from cleanbook.models.enums import RecipientKind


class NotificationResponse(BaseModel):
    id: uuid.UUID
    recipient_kind: RecipientKind
    booking_id: uuid.UUID | None = None
    type: str
    title: str
    body: str
    data: dict[str, Any] | None = None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int
