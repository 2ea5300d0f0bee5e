"""API routes."""

from fastapi import APIRouter

from chalk_pos.api.routes import transactions, tse

api_router = APIRouter()

api_router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
api_router.include_router(tse.router, prefix="/tse", tags=["tse", "fiscal"])
