from __future__ import annotations

from typing import Any

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notify_registry.models.base import TimestampedBase


class Organization(TimestampedBase):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    license_type: Mapped[str] = mapped_column(String(50), nullable=False, default="professional")
    # [{"id": ..., "name": ..., "access": "public", "paused": false}, ...]
    feeds: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
