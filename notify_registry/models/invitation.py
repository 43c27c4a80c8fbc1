from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notify_registry.models.base import TimestampedBase


class Invitation(TimestampedBase):
    __tablename__ = "invitations"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    subscriptions: Mapped[dict[str, dict[str, bool]]] = mapped_column(JSONB, nullable=False, default=dict)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feed_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
