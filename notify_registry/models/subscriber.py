from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notify_registry.models.base import TimestampedBase


class Subscriber(TimestampedBase):
    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    # {organization_id: {feed_id: bool}}; always reassigned, never mutated in place.
    subscriptions: Mapped[dict[str, dict[str, bool]]] = mapped_column(JSONB, nullable=False, default=dict)
    disabled: Mapped[bool] = mapped_column(nullable=False, default=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
