from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from glasswallet.infra.db import UUID_TYPE, Base

TAG_WHITELIST = "whitelist"
TAG_BLACKLIST = "blacklist"
TAG_QUALIFIED = "qualified"
TAG_UNQUALIFIED = "unqualified"
TAG_TYPES = (TAG_WHITELIST, TAG_BLACKLIST, TAG_QUALIFIED, TAG_UNQUALIFIED)


class LeadTag(Base):
    __tablename__ = "lead_tags"

    tag_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("leads.lead_id", ondelete="CASCADE"),
        nullable=False,
    )
    tag_type: Mapped[str] = mapped_column(String(16), nullable=False)
    tag_reason: Mapped[str | None] = mapped_column(String(200))
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("auto_tagging_rules.rule_id", ondelete="SET NULL"),
    )
    tagged_by: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE)
    synced_to_pixels: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    pixel_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
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

    lead = relationship("Lead", back_populates="tags")

    __table_args__ = (
        Index("ix_lead_tags_lead_type", "lead_id", "tag_type", unique=True),
        sa.CheckConstraint(
            "tag_type IN ('whitelist', 'blacklist', 'qualified', 'unqualified')",
            name="ck_lead_tags_tag_type",
        ),
    )


class AutoTaggingRule(Base):
    __tablename__ = "auto_tagging_rules"

    rule_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)
    conditions_json: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(),
        nullable=False,
        default=dict,
        server_default=sa.text("'{}'"),
    )
    actions_json: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(),
        nullable=False,
        default=dict,
        server_default=sa.text("'{}'"),
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
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
        Index("ix_auto_tagging_rules_user_name", "user_id", "rule_name", unique=True),
        Index("ix_auto_tagging_rules_user_active", "user_id", "is_active"),
    )
