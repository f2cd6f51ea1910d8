from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from glasswallet.infra.db import UUID_TYPE, Base

TRANSACTION_PULL = "pull"
TRANSACTION_PURCHASE = "purchase"
TRANSACTION_REFUND = "refund"
TRANSACTION_TYPES = (TRANSACTION_PULL, TRANSACTION_PURCHASE, TRANSACTION_REFUND)


class CreditTransaction(Base):
    """Append-only ledger row; never updated after insert."""

    __tablename__ = "credit_transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("leads.lead_id", ondelete="CASCADE"),
    )
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    cost_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    external_transaction_id: Mapped[str | None] = mapped_column(String(128))
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    lead = relationship("Lead", back_populates="transactions")

    __table_args__ = (
        sa.CheckConstraint("cost_in_cents >= 0", name="ck_credit_transactions_cost_non_negative"),
        sa.CheckConstraint("credit_balance_after >= 0", name="ck_credit_transactions_balance_non_negative"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index("ix_credit_transactions_lead", "lead_id"),
    )
