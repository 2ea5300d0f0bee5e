"""Sale transaction model."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from chalk_pos.db.base import Base, TimestampMixin


class TransactionStatus:
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Transaction(Base, TimestampMixin):
    """A completed sale. ``tse_data`` holds the fiscal signature snapshot, if any."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)  # cash, card
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.COMPLETED, nullable=False, index=True
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tse_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
