import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.database import get_db
from cleanbook.models.notification import Notification
from cleanbook.schemas.notification import NotificationListResponse, NotificationResponse
from cleanbook.utils.rate_limit import LIST_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

NOTIFICATION_WRITE_RATE_LIMIT = "60/minute"


def _unread(recipient_id: uuid.UUID):
    return (
        Notification.recipient_id == recipient_id,
        Notification.is_read.is_(False),
    )


def _inbox(recipient_id: uuid.UUID, unread_only: bool) -> Select:
    criteria = _unread(recipient_id) if unread_only else (Notification.recipient_id == recipient_id,)
    return select(Notification).where(*criteria).order_by(Notification.created_at.desc())


@router.get("/{recipient_id}", response_model=NotificationListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_notifications(
    request: Request,
    recipient_id: uuid.UUID,
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0, le=10000),
    db: AsyncSession = Depends(get_db),
):
    """A customer's or business's notifications, newest first."""
    page = (await db.scalars(_inbox(recipient_id, unread_only).limit(limit).offset(offset))).all()
    unread_count = await db.scalar(
        select(func.count()).select_from(Notification).where(*_unread(recipient_id))
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(note) for note in page],
        unread_count=unread_count or 0,
    )


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
@limiter.limit(NOTIFICATION_WRITE_RATE_LIMIT)
async def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    note = await db.get(Notification, notification_id)
    if note is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")

    if not note.is_read:
        note.is_read = True
        await db.flush()
        logger.info("notification_read", notification_id=str(notification_id))
    return NotificationResponse.model_validate(note)


@router.patch("/{recipient_id}/read-all")
@limiter.limit(NOTIFICATION_WRITE_RATE_LIMIT)
async def mark_all_read(
    request: Request,
    recipient_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification).where(*_unread(recipient_id)).values(is_read=True)
    )
    await db.flush()
    logger.info("notifications_read_all", recipient_id=str(recipient_id), count=result.rowcount)
    return {"status": "ok", "updated": result.rowcount}
