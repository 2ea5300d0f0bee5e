"""Fiscal (TSE) configuration model."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from chalk_pos.db.base import Base, TimestampMixin


class TseConfiguration(Base, TimestampMixin):
    """Fiskaly credentials and TSS binding of one organization."""

    __tablename__ = "tse_configurations"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(36), unique=True, index=True, nullable=False)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)
    api_secret: Mapped[str] = mapped_column(String(255), nullable=False)
    tss_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    admin_pin: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    environment: Mapped[str] = mapped_column(String(20), default="sandbox", nullable=False)  # sandbox, production
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
