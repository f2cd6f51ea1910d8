from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from glasswallet.infra.db import UUID_TYPE, Base

PLATFORM_META = "META"
PLATFORM_GOOGLE_ADS = "GOOGLE_ADS"
PLATFORM_TIKTOK = "TIKTOK"
PLATFORM_TYPES = (PLATFORM_META, PLATFORM_GOOGLE_ADS, PLATFORM_TIKTOK)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_EXPIRED = "expired"
STATUS_ERROR = "error"
CONNECTION_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_EXPIRED, STATUS_ERROR)

DEFAULT_SYNC_SETTINGS: dict[str, Any] = {
    "autoSync": False,
    "syncQualifiedOnly": True,
    "syncWhitelisted": True,
    "excludeBlacklisted": True,
    "minimumCreditScore": None,
    "syncFrequency": "daily",
}


class PixelConnection(Base):
    __tablename__ = "pixel_connections"

    connection_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    platform_type: Mapped[str] = mapped_column(String(16), nullable=False)
    connection_name: Mapped[str] = mapped_column(String(100), nullable=False)
    pixel_id: Mapped[str | None] = mapped_column(String(128))
    customer_id: Mapped[str | None] = mapped_column(String(128))
    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    account_info: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON())
    connection_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=STATUS_INACTIVE, server_default=STATUS_INACTIVE
    )
    sync_settings: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(),
        nullable=False,
        default=lambda: dict(DEFAULT_SYNC_SETTINGS),
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_pixel_connections_user_name", "user_id", "connection_name", unique=True),
        Index("ix_pixel_connections_user_status", "user_id", "connection_status"),
    )

    @property
    def effective_sync_settings(self) -> dict[str, Any]:
        return {**DEFAULT_SYNC_SETTINGS, **(self.sync_settings or {})}
