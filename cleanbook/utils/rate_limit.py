import os

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def get_real_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For only behind a known number of proxies.

    With TRUSTED_PROXY_COUNT at 0 (the default) the header is ignored, so a
    client cannot pick its own rate-limit bucket.
    """
    trusted_proxy_count = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
    if trusted_proxy_count > 0:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            ips = [ip.strip() for ip in forwarded.split(",")]
            index = max(0, len(ips) - trusted_proxy_count)
            return ips[index]
    return get_remote_address(request)


_is_dev = os.getenv("APP_ENV", "development") == "development"

limiter = Limiter(
    key_func=get_real_ip,
    default_limits=["200/minute" if _is_dev else "60/minute"],
)

# Booking and payment mutations
BOOKING_WRITE_RATE_LIMIT = "30/minute" if _is_dev else "10/minute"
CHECKOUT_RATE_LIMIT = "20/minute" if _is_dev else "5/minute"
LIST_RATE_LIMIT = "100/minute" if _is_dev else "30/minute"
