"""Meta (Facebook) connection and publishing records."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class MetaConnection(Base):
    """A user's connected Meta account: encrypted token, profile, and ad accounts."""

    __tablename__ = "meta_connections"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )

    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False, default="")
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fb_user_id: Mapped[str | None] = mapped_column(String(50))
    fb_user_name: Mapped[str | None] = mapped_column(String(200))
    fb_user_email: Mapped[str | None] = mapped_column(String(255))
    # [{id: "act_123", account_id: "123", name, account_status, currency, timezone_id, disable_reason}]
    ad_accounts: Mapped[list] = mapped_column(JSONB, default=list)
    account_currency: Mapped[str | None] = mapped_column(String(10))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="meta_connection")


class PublishedAd(Base):
    """One ad set pushed to Meta, recorded after a publish run."""

    __tablename__ = "published_ads"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    campaign_name: Mapped[str] = mapped_column(String(500), nullable=False)
    ad_set_id: Mapped[str] = mapped_column(String(50), nullable=False)
    ad_account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    daily_budget: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(30), default="published")
    extra: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class SubscriptionUsage(Base):
    """Per-user publishing counters."""

    __tablename__ = "subscription_usage"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    ads_published_count: Mapped[int] = mapped_column(Integer, default=0)
    campaigns_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="usage")
