import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cleanbook.database import Base
from cleanbook.models.types import GUID, utcnow


class BusinessStripeAccount(Base):
    """Connected-account record for a business (onboarding lives elsewhere)."""

    __tablename__ = "business_stripe_accounts"

    business_id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True)
    stripe_connect_account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
