import os
import uuid
from unittest.mock import MagicMock, patch

import pytest
from httpx import AsyncClient

from cleanbook.utils.rate_limit import CHECKOUT_RATE_LIMIT, get_real_ip


def _request(forwarded: str | None = None):
    req = MagicMock()
    req.headers = {"X-Forwarded-For": forwarded} if forwarded is not None else {}
    return req


def test_forwarded_header_ignored_without_trusted_proxies():
    with (
        patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "0"}),
        patch("cleanbook.utils.rate_limit.get_remote_address", return_value="203.0.113.9"),
    ):
        assert get_real_ip(_request(forwarded="1.2.3.4")) == "203.0.113.9"


@pytest.mark.parametrize(
    "proxies, forwarded, expected",
    [
        ("1", "198.51.100.7, 10.0.0.1", "10.0.0.1"),
        ("2", "198.51.100.7, 10.0.0.1, 10.0.0.2", "10.0.0.1"),
        ("5", "198.51.100.7, 10.0.0.1", "198.51.100.7"),
    ],
)
def test_trusted_proxy_hops(proxies, forwarded, expected):
    with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": proxies}):
        assert get_real_ip(_request(forwarded=forwarded)) == expected


def test_trusted_proxy_without_header_falls_back():
    with (
        patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "1"}),
        patch("cleanbook.utils.rate_limit.get_remote_address", return_value="172.16.0.4"),
    ):
        assert get_real_ip(_request()) == "172.16.0.4"


@pytest.mark.asyncio
async def test_checkout_is_rate_limited(client: AsyncClient):
    allowed = int(CHECKOUT_RATE_LIMIT.split("/", 1)[0])
    body = {"business_id": str(uuid.uuid4()), "total_cost": "20.00"}

    for _ in range(allowed):
        response = await client.post("/payments/intents", json=body)
        assert response.status_code == 201

    blocked = await client.post("/payments/intents", json=body)
    assert blocked.status_code == 429
