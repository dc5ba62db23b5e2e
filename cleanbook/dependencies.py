import hmac

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import settings
from cleanbook.database import get_db
from cleanbook.services.booking_cache import BookingViewCache
from cleanbook.services.booking_store import BookingStore
from cleanbook.services.lifecycle import BookingLifecycleEngine
from cleanbook.services.notifications import NotificationDispatcher
from cleanbook.services.stripe_service import StripeGateway

logger = structlog.get_logger()


def get_booking_cache(request: Request) -> BookingViewCache:
    """The cache created in the app lifespan."""
    cache = getattr(request.app.state, "booking_cache", None)
    if cache is None:
        cache = BookingViewCache(ttl_seconds=settings.BOOKING_CACHE_TTL_SECONDS)
        request.app.state.booking_cache = cache
    return cache


def get_gateway() -> StripeGateway:
    return StripeGateway()


async def get_store(db: AsyncSession = Depends(get_db)) -> BookingStore:
    return BookingStore(db)


async def get_engine(
    db: AsyncSession = Depends(get_db),
    store: BookingStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    cache: BookingViewCache = Depends(get_booking_cache),
) -> BookingLifecycleEngine:
    return BookingLifecycleEngine(store, NotificationDispatcher(db), gateway=gateway, cache=cache)


def is_admin_key(api_key: str | None) -> bool:
    if not settings.ADMIN_API_KEY or not api_key:
        return False
    return hmac.compare_digest(api_key, settings.ADMIN_API_KEY)


async def require_admin(x_admin_key: str | None = Header(None)) -> None:
    """Back-office calls authenticate with a shared key in ``X-Admin-Key``."""
    if not settings.ADMIN_API_KEY:
        logger.error("admin_key_not_configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin access not configured")
    if not is_admin_key(x_admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
