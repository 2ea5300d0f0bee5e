"""Sale transaction schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class SaleItemIn(BaseModel):
    """Line item of a sale."""
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    vat_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)  # percent


class TransactionCreate(BaseModel):
    """Checkout request body."""
    items: List[SaleItemIn] = Field(..., min_length=1)
    payment_method: Literal["cash", "card"]
    total_amount: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def fill_total(self) -> "TransactionCreate":
        if self.total_amount is None:
            self.total_amount = sum((item.price * item.quantity for item in self.items), Decimal("0"))
        return self


class TransactionResponse(BaseModel):
    """Sale as stored, including the fiscal signature snapshot if one was obtained."""
    id: str
    organization_id: str
    total_amount: Decimal
    payment_method: str
    items: List[Dict[str, Any]]
    status: str
    created_by: Optional[str] = None
    tse_data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
