import uuid
from unittest.mock import patch

import pytest
import stripe
from httpx import AsyncClient

from tests.conftest import ADMIN_HEADERS, create_booking_via_api


def _event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {"id": event_id or f"evt_{uuid.uuid4().hex[:12]}", "type": event_type, "data": {"object": obj}}


async def _post_event(client: AsyncClient, event: dict):
    with patch("cleanbook.payments.routes.verify_webhook_signature", return_value=event):
        return await client.post(
            "/payments/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=sig"}
        )


# ============ intents ============


@pytest.mark.asyncio
async def test_intent_quotes_fee_split(client: AsyncClient):
    response = await client.post(
        "/payments/intents", json={"business_id": str(uuid.uuid4()), "total_cost": "85.00"}
    )

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["platform_fee"] == "12.75"
    assert data["business_earnings"] == "72.25"
    assert data["using_connect"] is False
    assert data["payment_intent_id"].startswith("pi_mock_8500_")


@pytest.mark.asyncio
async def test_intent_rejects_non_positive_amount(client: AsyncClient):
    response = await client.post("/payments/intents", json={"business_id": str(uuid.uuid4()), "total_cost": "0"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_connected_account_routes_intent(client: AsyncClient):
    business_id = str(uuid.uuid4())
    saved = await client.put(
        f"/payments/connected-accounts/{business_id}",
        json={"stripe_connect_account_id": "acct_1ABC", "charges_enabled": True},
        headers=ADMIN_HEADERS,
    )
    assert saved.status_code == 200
    assert saved.json()["stripe_connect_account_id"] == "acct_1ABC"

    intent = await client.post("/payments/intents", json={"business_id": business_id, "total_cost": "40.00"})
    assert intent.json()["using_connect"] is True

    booking = await create_booking_via_api(client, business_id=business_id, total_cost="40.00")
    assert booking["payment"]["settlement_mode"] == "connected"


@pytest.mark.asyncio
async def test_connected_account_requires_admin_key(client: AsyncClient):
    response = await client.put(
        f"/payments/connected-accounts/{uuid.uuid4()}",
        json={"stripe_connect_account_id": "acct_1ABC"},
        headers={"X-Admin-Key": "wrong"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_connected_account_id_format(client: AsyncClient):
    response = await client.put(
        f"/payments/connected-accounts/{uuid.uuid4()}",
        json={"stripe_connect_account_id": "not-an-account"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 422


# ============ admin refund ============


@pytest.mark.asyncio
async def test_admin_refund_of_declined_booking(client: AsyncClient):
    booking = await create_booking_via_api(client)
    await client.patch(
        f"/bookings/{booking['id']}/status", json={"status": "declined", "response_message": "Fully booked"}
    )

    response = await client.post("/payments/refund", json={"booking_id": booking["id"]}, headers=ADMIN_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["refund"]["refund_id"].startswith("re_mock_")

    current = await client.get(f"/bookings/{booking['id']}")
    assert current.json()["booking"]["status"] == "declined"
    assert current.json()["booking"]["refund_status"] == "processed"


@pytest.mark.asyncio
async def test_admin_refund_rejected_for_pending_booking(client: AsyncClient):
    booking = await create_booking_via_api(client)
    response = await client.post("/payments/refund", json={"booking_id": booking["id"]}, headers=ADMIN_HEADERS)
    assert response.status_code == 422
    assert response.json()["kind"] == "validation"


@pytest.mark.asyncio
async def test_refund_requires_admin_key(client: AsyncClient):
    response = await client.post("/payments/refund", json={"booking_id": str(uuid.uuid4())})
    assert response.status_code == 403


# ============ webhooks ============


@pytest.mark.asyncio
async def test_webhook_without_secret_is_rejected(client: AsyncClient):
    response = await client.post("/payments/webhooks/stripe", content=b"{}", headers={"stripe-signature": "x"})
    assert response.status_code == 501


@pytest.mark.asyncio
async def test_webhook_bad_signature(client: AsyncClient):
    error = stripe.SignatureVerificationError("bad", "sig")
    with patch("cleanbook.payments.routes.verify_webhook_signature", side_effect=error):
        response = await client.post("/payments/webhooks/stripe", content=b"{}", headers={"stripe-signature": "x"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_charge_refunded_event(client: AsyncClient):
    booking = await create_booking_via_api(client)

    response = await _post_event(
        client, _event("charge.refunded", {"id": "ch_1", "payment_intent": booking["payment_intent_id"]})
    )

    assert response.json() == {"status": "processed"}
    current = (await client.get(f"/bookings/{booking['id']}")).json()["booking"]
    assert current["status"] == "pending"
    assert current["refund_status"] == "processed"
    assert current["payment"]["status"] == "refunded"


@pytest.mark.asyncio
async def test_payment_failed_event_keeps_booking_status(client: AsyncClient):
    booking = await create_booking_via_api(client)

    response = await _post_event(
        client,
        _event(
            "payment_intent.payment_failed",
            {"id": booking["payment_intent_id"], "last_payment_error": {"message": "Card declined"}},
        ),
    )

    assert response.json() == {"status": "processed"}
    current = (await client.get(f"/bookings/{booking['id']}")).json()["booking"]
    assert current["status"] == "pending"
    assert current["payment"]["status"] == "failed"


@pytest.mark.asyncio
async def test_duplicate_event_skipped(client: AsyncClient):
    booking = await create_booking_via_api(client)
    event = _event("payment_intent.succeeded", {"id": booking["payment_intent_id"]}, event_id="evt_dup")

    first = await _post_event(client, event)
    second = await _post_event(client, event)

    assert first.json() == {"status": "processed"}
    assert second.json() == {"status": "already_processed"}


@pytest.mark.asyncio
async def test_unhandled_and_unmatched_events(client: AsyncClient):
    ignored = await _post_event(client, _event("customer.created", {"id": "cus_1"}))
    assert ignored.json() == {"status": "ignored"}

    unmatched = await _post_event(client, _event("payment_intent.succeeded", {"id": "pi_unknown"}))
    assert unmatched.json() == {"status": "unmatched"}


@pytest.mark.asyncio
async def test_oversized_webhook_payload(client: AsyncClient):
    response = await client.post(
        "/payments/webhooks/stripe", content=b"x" * 70_000, headers={"stripe-signature": "x"}
    )
    assert response.status_code == 413
