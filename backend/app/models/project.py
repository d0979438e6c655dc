import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


class Project(Base):
    """A website being turned into a Meta campaign.

    The JSON columns are written by whichever step runs next and are kept
    loosely typed on purpose; ``adset_thumbnail_image`` is either a mapping of
    ad set id to image URL or, for older rows, a single URL string.
    """

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(30), default="PENDING", index=True)

    url_analysis: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    analysing_points: Mapped[dict | list | None] = mapped_column(JSONB)
    ad_set_proposals: Mapped[list | None] = mapped_column(JSONB, default=list)
    campaign_proposal: Mapped[dict | None] = mapped_column(JSONB)
    adset_thumbnail_image: Mapped[dict | str | None] = mapped_column(JSONB)
    ai_images: Mapped[list | dict | None] = mapped_column(JSONB)

    meta_campaign_id: Mapped[str | None] = mapped_column(String(50))
    meta_campaign_name: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="projects")
