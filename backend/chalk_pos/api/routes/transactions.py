"""Sale transaction API routes."""

from fastapi import APIRouter, HTTPException, Request

from chalk_pos.api.routes.tse import TseRegistry
from chalk_pos.core.rate_limit import limiter
from chalk_pos.core.rbac import RequireManager, RequireStaff
from chalk_pos.db.session import DbSession
from chalk_pos.schemas.transaction import TransactionCreate, TransactionResponse
from chalk_pos.services.transaction_service import (
    TransactionNotFoundError,
    TransactionService,
    TransactionStateError,
)

router = APIRouter()


@router.post("", response_model=TransactionResponse, status_code=201)
@limiter.limit("120/minute")
async def create_transaction(
    request: Request,
    body: TransactionCreate,
    db: DbSession,
    registry: TseRegistry,
    current_user: RequireStaff,
):
    """Record a sale. Fiscal signing is attempted but never blocks the sale."""
    service = TransactionService(db, registry)
    return await service.create_sale(current_user.organization_id, body, created_by=current_user.user_id)


@router.get("/{transaction_id}", response_model=TransactionResponse)
@limiter.limit("60/minute")
async def get_transaction(
    request: Request, transaction_id: str, db: DbSession, registry: TseRegistry, current_user: RequireStaff
):
    service = TransactionService(db, registry)
    try:
        return service.get(current_user.organization_id, transaction_id)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
@limiter.limit("30/minute")
async def cancel_transaction(
    request: Request, transaction_id: str, db: DbSession, registry: TseRegistry, current_user: RequireManager
):
    """Mark a sale cancelled. The fiscal record is left untouched."""
    service = TransactionService(db, registry)
    try:
        return service.cancel_sale(current_user.organization_id, transaction_id)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransactionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
