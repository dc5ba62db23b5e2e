import asyncio
import uuid
from html import escape
from typing import Set

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import settings
from cleanbook.models.enums import NotificationType, RecipientKind
from cleanbook.models.notification import Notification
from cleanbook.utils.log_mask import mask_email

logger = structlog.get_logger()

RESEND_URL = "https://api.resend.com/emails"

# Keep references to background tasks to prevent GC collection
_background_tasks: Set[asyncio.Task] = set()

_http_client: httpx.AsyncClient | None = None


def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


async def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send an email via Resend API.

    If RESEND_API_KEY is not configured, gracefully logs and returns True (dev mode).
    """
    if not settings.RESEND_API_KEY:
        logger.info("email_send_dev_mode", to=mask_email(to_email), subject=subject)
        return True

    try:
        client = _get_http_client()
        response = await client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            json={
                "from": settings.EMAIL_FROM,
                "to": [to_email],
                "subject": subject,
                "html": f"<p>{escape(body)}</p>",
            },
        )
        if response.is_success:
            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True
        logger.error(
            "email_send_failed",
            to=mask_email(to_email),
            subject=subject,
            status_code=response.status_code,
        )
        return False
    except httpx.HTTPError as exc:
        logger.error("email_send_error", to=mask_email(to_email), subject=subject, error=str(exc))
        return False


class NotificationDispatcher:
    """Fire-and-forget delivery of booking events to the counterparty.

    Each call stores an in-app notification in the caller's session and, when
    an address is known, sends an email in the background. Delivery problems
    are logged and never propagate to the booking transition that caused them.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        recipient_id: uuid.UUID,
        booking_id: uuid.UUID | None,
        event_kind: NotificationType,
        title: str,
        body: str,
        recipient_kind: RecipientKind,
        email: str | None = None,
        data: dict | None = None,
    ) -> Notification | None:
        payload = {"type": event_kind.value, **(data or {})}
        if booking_id is not None:
            payload["booking_id"] = str(booking_id)

        notification = Notification(
            recipient_id=recipient_id,
            recipient_kind=recipient_kind,
            booking_id=booking_id,
            type=event_kind.value,
            title=title,
            body=body,
            data=payload,
        )
        try:
            self.db.add(notification)
            await self.db.flush()
        except SQLAlchemyError:
            logger.exception(
                "notification_persist_failed",
                recipient_id=str(recipient_id),
                event_kind=event_kind.value,
            )
            notification = None

        if email:
            task = asyncio.create_task(send_email(email, title, body))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)

        logger.info(
            "notification_dispatched",
            recipient_id=str(recipient_id),
            recipient_kind=recipient_kind.value,
            event_kind=event_kind.value,
            booking_id=str(booking_id) if booking_id else None,
        )
        return notification
