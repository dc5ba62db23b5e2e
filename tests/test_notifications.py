import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import settings
from cleanbook.models.enums import NotificationType, RecipientKind
from cleanbook.models.notification import Notification
from cleanbook.services import notifications
from cleanbook.services.notifications import NotificationDispatcher, send_email
from cleanbook.utils.log_mask import mask_email
from tests.conftest import create_booking_via_api


# ============ email ============


@pytest.mark.asyncio
async def test_send_email_dev_mode():
    assert await send_email("alice@example.com", "Subject", "Body") is True


@pytest.mark.asyncio
async def test_send_email_posts_to_resend():
    http = MagicMock()
    http.post = AsyncMock(return_value=MagicMock(is_success=True, status_code=200))

    with (
        patch.object(settings, "RESEND_API_KEY", "re_test"),
        patch.object(notifications, "_get_http_client", return_value=http),
    ):
        assert await send_email("alice@example.com", "Booking <confirmed>", "A & B") is True

    payload = http.post.call_args.kwargs["json"]
    assert payload["to"] == ["alice@example.com"]
    assert payload["html"] == "<p>A &amp; B</p>"
    assert http.post.call_args.kwargs["headers"]["Authorization"] == "Bearer re_test"


@pytest.mark.asyncio
async def test_send_email_provider_rejects():
    http = MagicMock()
    http.post = AsyncMock(return_value=MagicMock(is_success=False, status_code=422))

    with (
        patch.object(settings, "RESEND_API_KEY", "re_test"),
        patch.object(notifications, "_get_http_client", return_value=http),
    ):
        assert await send_email("alice@example.com", "Subject", "Body") is False


@pytest.mark.asyncio
async def test_send_email_network_error():
    http = MagicMock()
    http.post = AsyncMock(side_effect=httpx.ConnectTimeout("timed out"))

    with (
        patch.object(settings, "RESEND_API_KEY", "re_test"),
        patch.object(notifications, "_get_http_client", return_value=http),
    ):
        assert await send_email("alice@example.com", "Subject", "Body") is False


def test_mask_email():
    assert mask_email("jane@example.com") == "j***@example.com"
    assert mask_email(None) == "***"


# ============ dispatcher ============


@pytest.mark.asyncio
async def test_dispatcher_stores_notification(db: AsyncSession):
    recipient = uuid.uuid4()
    booking_id = uuid.uuid4()

    note = await NotificationDispatcher(db).notify(
        recipient,
        booking_id,
        NotificationType.BOOKING_ACCEPTED,
        "Booking accepted",
        "See you then",
        RecipientKind.CUSTOMER,
    )

    assert note is not None
    stored = (await db.execute(select(Notification).where(Notification.recipient_id == recipient))).scalar_one()
    assert stored.type == "booking_accepted"
    assert stored.data == {"type": "booking_accepted", "booking_id": str(booking_id)}
    assert stored.is_read is False


@pytest.mark.asyncio
async def test_dispatcher_swallows_persist_failure():
    session = MagicMock()
    session.flush = AsyncMock(side_effect=SQLAlchemyError("down"))

    note = await NotificationDispatcher(session).notify(
        uuid.uuid4(), None, NotificationType.PAYMENT_FAILED, "Payment problem", "Card declined", RecipientKind.CUSTOMER
    )

    assert note is None


@pytest.mark.asyncio
async def test_dispatcher_schedules_email(db: AsyncSession):
    with patch.object(notifications, "send_email", new=AsyncMock(return_value=True)) as send:
        await NotificationDispatcher(db).notify(
            uuid.uuid4(),
            None,
            NotificationType.BOOKING_DECLINED,
            "Booking declined",
            "Fully booked",
            RecipientKind.CUSTOMER,
            email="alice@example.com",
        )
        for task in list(notifications._background_tasks):
            await task

    send.assert_awaited_once_with("alice@example.com", "Booking declined", "Fully booked")


# ============ API ============


@pytest.mark.asyncio
async def test_business_notified_of_new_booking(client: AsyncClient):
    booking = await create_booking_via_api(client)

    response = await client.get(f"/notifications/{booking['business_id']}")

    assert response.status_code == 200
    data = response.json()
    assert data["unread_count"] == 1
    note = data["notifications"][0]
    assert note["type"] == "new_booking_request"
    assert note["recipient_kind"] == "business"
    assert note["booking_id"] == booking["id"]


@pytest.mark.asyncio
async def test_mark_notification_read(client: AsyncClient):
    booking = await create_booking_via_api(client)
    listing = await client.get(f"/notifications/{booking['business_id']}")
    note_id = listing.json()["notifications"][0]["id"]

    response = await client.patch(f"/notifications/{note_id}/read")
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    unread = await client.get(f"/notifications/{booking['business_id']}", params={"unread_only": True})
    assert unread.json() == {"notifications": [], "unread_count": 0}


@pytest.mark.asyncio
async def test_mark_unknown_notification_read(client: AsyncClient):
    response = await client.patch(f"/notifications/{uuid.uuid4()}/read")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient):
    first = await create_booking_via_api(client)
    await create_booking_via_api(client, business_id=first["business_id"])

    response = await client.patch(f"/notifications/{first['business_id']}/read-all")

    assert response.json() == {"status": "ok", "updated": 2}
    listing = await client.get(f"/notifications/{first['business_id']}")
    assert listing.json()["unread_count"] == 0
