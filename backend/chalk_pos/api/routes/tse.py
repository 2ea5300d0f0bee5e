"""Fiscal (TSE / KassenSichV) administration API routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from chalk_pos.core.rate_limit import limiter
from chalk_pos.core.rbac import RequireManager, RequireOwner
from chalk_pos.db.session import DbSession
from chalk_pos.schemas.tse import (
    TseActionResult,
    TseConfigResponse,
    TseConfigUpdate,
    TseExportRequest,
    TseRunResult,
    TssStatus,
)
from chalk_pos.services.tse import admin, config_store
from chalk_pos.services.tse.errors import NotConfigured, NotEnabled, TseError
from chalk_pos.services.tse.registry import TseManagerRegistry, get_tse_registry

logger = logging.getLogger(__name__)

router = APIRouter()

TseRegistry = Annotated[TseManagerRegistry, Depends(get_tse_registry)]


def tse_http_error(e: TseError) -> HTTPException:
    """Translate a TSE failure into the HTTP error shown by the admin UI."""
    if isinstance(e, NotConfigured):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, NotEnabled):
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=502, detail=str(e))


@router.get("/config", response_model=TseConfigResponse)
@limiter.limit("60/minute")
async def get_tse_config(request: Request, db: DbSession, current_user: RequireManager):
    """Get the TSE configuration with secrets masked."""
    row = config_store.get_config(db, current_user.organization_id)
    return TseConfigResponse.from_model(row)


@router.put("/config", response_model=TseConfigResponse)
@limiter.limit("10/minute")
async def save_tse_config(
    request: Request,
    body: TseConfigUpdate,
    db: DbSession,
    registry: TseRegistry,
    current_user: RequireManager,
):
    """Create or update the TSE configuration."""
    try:
        row = config_store.save_config(db, current_user.organization_id, body.model_dump())
    except TseError as e:
        raise tse_http_error(e)
    await registry.invalidate(current_user.organization_id)
    return TseConfigResponse.from_model(row)


@router.post("/deactivate", response_model=TseActionResult)
@limiter.limit("10/minute")
async def deactivate_tse(
    request: Request, db: DbSession, registry: TseRegistry, current_user: RequireManager
):
    """Turn fiscal signing off without touching the remote TSS."""
    if not config_store.deactivate_config(db, current_user.organization_id):
        raise HTTPException(status_code=404, detail="TSE configuration not found")
    await registry.invalidate(current_user.organization_id)
    return TseActionResult(success=True, message="TSE deactivated")


@router.post("/test", response_model=TseActionResult)
@limiter.limit("10/minute")
async def test_tse_connection(request: Request, registry: TseRegistry, current_user: RequireManager):
    """Re-initialize the manager and report whether signing is available."""
    await registry.invalidate(current_user.organization_id)
    manager = await registry.get(current_user.organization_id)
    if manager.is_enabled():
        return TseActionResult(success=True, message="TSE connection successful")
    if manager.get_config() is None:
        return TseActionResult(success=False, message="TSE not configured or inactive")
    reason = f": {manager.last_error}" if manager.last_error else ""
    return TseActionResult(success=False, message=f"TSE connection failed{reason}")


@router.get("/status", response_model=TssStatus)
@limiter.limit("30/minute")
async def get_tss_status(
    request: Request, db: DbSession, registry: TseRegistry, current_user: RequireManager
):
    """Remote TSS state and client registration."""
    try:
        config = config_store.require_active_config(db, current_user.organization_id)
        return await admin.get_tss_status(config, registry.client_factory)
    except TseError as e:
        raise tse_http_error(e)


@router.post("/initialize", response_model=TseRunResult)
@limiter.limit("5/minute")
async def initialize_tss(
    request: Request, db: DbSession, registry: TseRegistry, current_user: RequireManager
):
    """Provision the TSS up to INITIALIZED and register this client."""
    try:
        config = config_store.require_active_config(db, current_user.organization_id)
    except TseError as e:
        raise tse_http_error(e)

    run = await admin.initialize_tss(config, registry.client_factory)
    await registry.invalidate(current_user.organization_id)
    logger.info(
        f"TSS initialization for organization {current_user.organization_id} "
        f"by {current_user.email}: success={run.success}"
    )
    return TseRunResult(success=run.success, logs=run.logs, data=run.data)


@router.post("/disable", response_model=TseActionResult)
@limiter.limit("5/minute")
async def disable_tss(
    request: Request, db: DbSession, registry: TseRegistry, current_user: RequireOwner
):
    """Permanently disable the TSS and deactivate the local configuration."""
    try:
        config = config_store.require_active_config(db, current_user.organization_id)
        if not config.admin_pin:
            raise NotConfigured("Admin PIN is required to disable the TSS")
        await admin.disable_tss(config, registry.client_factory)
    except TseError as e:
        raise tse_http_error(e)

    config_store.deactivate_config(db, current_user.organization_id)
    await registry.invalidate(current_user.organization_id)
    return TseActionResult(success=True, message="TSS disabled")


@router.post("/export")
@limiter.limit("5/minute")
async def export_dsfinvk(
    request: Request, body: TseExportRequest, registry: TseRegistry, current_user: RequireManager
):
    """Download the DSFinV-K / TAR export for a date range."""
    manager = await registry.get(current_user.organization_id)
    try:
        content = await manager.export_compliance(body.start_date, body.end_date)
    except TseError as e:
        raise tse_http_error(e)

    filename = f"dsfinvk_{body.start_date.isoformat()}_{body.end_date.isoformat()}.tar"
    return Response(
        content=content,
        media_type="application/x-tar",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/debug", response_model=TseRunResult)
@limiter.limit("5/minute")
async def debug_tse(request: Request, registry: TseRegistry, current_user: RequireManager):
    """Sign a test sale and return the step log."""
    manager = await registry.get(current_user.organization_id)
    run = await admin.debug_signing(manager)
    return TseRunResult(success=run.success, logs=run.logs, data=run.data)
