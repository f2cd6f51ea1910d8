from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from glasswallet.infra.db import UUID_TYPE, Base


class Lead(Base):
    __tablename__ = "leads"

    lead_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32))
    address: Mapped[str | None] = mapped_column(String(200))
    city: Mapped[str | None] = mapped_column(String(100))
    state: Mapped[str | None] = mapped_column(String(2))
    zip_code: Mapped[str | None] = mapped_column(String(10))
    credit_score: Mapped[int | None] = mapped_column(Integer)
    income_estimate: Mapped[int | None] = mapped_column(sa.BigInteger)
    consent_given: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    consent_metadata: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON())
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="api", server_default="api")
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    data_retention_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
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

    tags = relationship(
        "LeadTag",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )
    transactions = relationship(
        "CreditTransaction",
        back_populates="lead",
        passive_deletes=True,
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_leads_user_email", "user_id", "email", unique=True),
        Index("ix_leads_user_created", "user_id", "created_at"),
        Index("ix_leads_user_score", "user_id", "credit_score"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def tag_types(self) -> list[str]:
        return sorted(tag.tag_type for tag in (self.tags or []))
