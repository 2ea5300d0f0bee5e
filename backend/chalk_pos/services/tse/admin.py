"""TSS administration and diagnostics for the admin UI and scripts.

These flows run against a dedicated client built from the stored
configuration, not the cached signing manager, and every remote failure
propagates except where a step log is returned instead.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chalk_pos.services.tse.config_store import FiscalConfig
from chalk_pos.services.tse.errors import TseError
from chalk_pos.services.tse.fiskaly_client import FiskalyClient, SaleItem, TssState
from chalk_pos.services.tse.manager import ClientFactory, TseManager

logger = logging.getLogger(__name__)


@dataclass
class AdminRun:
    """Result of a multi-step admin action, with a human-readable step log."""
    success: bool = False
    logs: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def log(self, message: str) -> None:
        self.logs.append(message)


async def get_tss_status(
    config: FiscalConfig,
    client_factory: ClientFactory = FiskalyClient,
) -> Dict[str, Any]:
    """Current remote TSS state and whether our client id is registered."""
    async with client_factory(config.to_fiskaly_config()) as client:
        state = await client.get_tss_state()
        client_registered = await client.is_client_registered()
    return {
        "tss_id": config.tss_id,
        "client_id": config.client_id,
        "environment": config.environment,
        "state": state.value,
        "client_registered": client_registered,
    }


async def initialize_tss(
    config: FiscalConfig,
    client_factory: ClientFactory = FiskalyClient,
    attempts: Optional[int] = None,
    interval: Optional[float] = None,
) -> AdminRun:
    """Walk the TSS up to INITIALIZED and register the client.

    Returns the step log; a failed step ends the run with ``success=False``.
    """
    run = AdminRun()
    if not config.admin_pin:
        run.log("Admin PIN is not configured")
        return run

    async with client_factory(config.to_fiskaly_config()) as client:
        try:
            state = await client.provision_tss(
                config.admin_pin, attempts=attempts, interval=interval, on_step=run.log
            )
        except TseError as e:
            run.log(f"Initialization failed: {e}")
            return run

        try:
            await client.ensure_client_registered()
            run.log(f"Client {config.client_id} registered")
        except TseError as e:
            run.log(f"Client registration failed: {e}")
            return run

    run.success = state == TssState.INITIALIZED
    run.data["state"] = state.value
    return run


async def disable_tss(
    config: FiscalConfig,
    client_factory: ClientFactory = FiskalyClient,
) -> TssState:
    """Permanently disable the TSS. The caller deactivates the local configuration."""
    async with client_factory(config.to_fiskaly_config()) as client:
        state = await client.disable_tss(config.admin_pin)
    logger.warning(f"TSS {config.tss_id} of organization {config.organization_id} disabled")
    return state


async def debug_signing(manager: TseManager) -> AdminRun:
    """Sign a throwaway sale through ``manager`` and report every step."""
    run = AdminRun()
    config = manager.get_config()
    if config is None:
        run.log("No active TSE configuration found")
        return run

    run.log(f"TSS ID: {config.tss_id}")
    run.log(f"Client ID: {config.client_id}")
    run.log(f"Environment: {config.environment}")
    run.log(f"Has API key: {bool(config.api_key)}")
    run.log(f"Has API secret: {bool(config.api_secret)}")
    run.log(f"Manager enabled: {manager.is_enabled()}")

    if not manager.is_enabled():
        if manager.last_error is not None:
            run.log(f"Initialization error: {manager.last_error}")
        return run

    tx_id = f"test-{int(time.time() * 1000)}"
    run.log(f"Test transaction ID: {tx_id}")
    result = await manager.try_sign(
        tx_id, 10.0, "cash", [SaleItem(name="Test Item", price=10.0, quantity=1, vat_rate=19)]
    )
    if not result.ok:
        run.log(f"Signing failed: {result.error}")
        if result.error is not None and result.error.detail is not None:
            run.log(f"Response: {result.error.detail!r}")
        return run

    signature = result.signature
    run.log("Transaction signed")
    run.log(f"Transaction number: {signature.transaction_number}")
    run.log(f"Signature counter: {signature.signature_counter}")
    run.success = True
    run.data["signature"] = signature.to_dict()
    return run
