"""Fiscal (TSE) administration schemas."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from chalk_pos.models.tse import TseConfiguration


class TseConfigUpdate(BaseModel):
    """Create/update body. Secrets sent back as ``*****`` keep their stored value."""
    api_key: Optional[str] = Field(default=None, max_length=255)
    api_secret: Optional[str] = Field(default=None, max_length=255)
    tss_id: Optional[str] = Field(default=None, max_length=64)
    client_id: Optional[str] = Field(default=None, max_length=64)
    admin_pin: Optional[str] = Field(default=None, max_length=64)
    environment: Optional[Literal["sandbox", "production"]] = None
    is_active: Optional[bool] = None


class TseConfigResponse(BaseModel):
    """Configuration as shown to administrators; secrets are never returned."""
    configured: bool
    tss_id: Optional[str] = None
    client_id: Optional[str] = None
    environment: Optional[str] = None
    is_active: bool = False
    has_api_key: bool = False
    has_api_secret: bool = False
    has_admin_pin: bool = False

    @classmethod
    def from_model(cls, row: Optional[TseConfiguration]) -> "TseConfigResponse":
        if row is None:
            return cls(configured=False)
        return cls(
            configured=True,
            tss_id=row.tss_id,
            client_id=row.client_id,
            environment=row.environment,
            is_active=row.is_active,
            has_api_key=bool(row.api_key),
            has_api_secret=bool(row.api_secret),
            has_admin_pin=bool(row.admin_pin),
        )


class TseActionResult(BaseModel):
    success: bool
    message: str


class TseRunResult(BaseModel):
    """Multi-step admin action with its step log."""
    success: bool
    logs: List[str] = []
    data: Dict[str, Any] = {}


class TssStatus(BaseModel):
    tss_id: str
    client_id: str
    environment: str
    state: str
    client_registered: bool


class TseExportRequest(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self) -> "TseExportRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
