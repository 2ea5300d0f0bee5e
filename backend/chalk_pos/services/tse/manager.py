"""
Per-organization TSE manager.

Wraps one ``FiskalyClient`` and decides which failures matter:
- initialization: missing configuration means "disabled", a failed health
  check means "disabled", a failed client registration fails initialization
- signing: always best-effort, a sale is never blocked by the TSE
- export: failures propagate to the administrator who asked for it
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Optional, Union

from chalk_pos.services.tse.config_store import FiscalConfig, TseConfigStore
from chalk_pos.services.tse.errors import NotEnabled, TseError
from chalk_pos.services.tse.fiskaly_client import (
    FiskalyClient,
    FiskalyConfig,
    SaleItem,
    TseSignatureData,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[FiskalyConfig], FiskalyClient]


@dataclass
class SigningResult:
    """Outcome of one signing attempt: a signature or the error that stopped it."""
    signature: Optional[TseSignatureData] = None
    error: Optional[TseError] = None
    started: bool = False

    @property
    def ok(self) -> bool:
        return self.signature is not None


class TseManager:
    """Fiscal signing for one organization."""

    def __init__(
        self,
        organization_id: str,
        config_store: TseConfigStore,
        client_factory: ClientFactory = FiskalyClient,
    ):
        self.organization_id = organization_id
        self._config_store = config_store
        self._client_factory = client_factory
        self._config: Optional[FiscalConfig] = None
        self._client: Optional[FiskalyClient] = None
        self._enabled = False
        self._in_flight = 0
        self._retired = False
        self.last_error: Optional[TseError] = None

    @property
    def client(self) -> Optional[FiskalyClient]:
        return self._client

    def is_enabled(self) -> bool:
        return self._enabled and self._client is not None

    def get_config(self) -> Optional[FiscalConfig]:
        return self._config

    async def initialize(self) -> bool:
        """Load the configuration and bring up the client.

        Returns True when the TSE is usable. ``last_error`` keeps the
        failure that disabled it, if any.
        """
        await self._close_client()
        self._enabled = False
        self.last_error = None

        config = self._config_store.load_active(self.organization_id)
        self._config = config
        if config is None:
            logger.info(f"TSE not configured for organization {self.organization_id}")
            return False
        if not config.is_complete():
            logger.warning(f"TSE configuration incomplete for organization {self.organization_id}")
            return False

        client = self._client_factory(config.to_fiskaly_config())
        try:
            if not await client.health_check():
                self.last_error = TseError("TSE health check failed")
                logger.warning(
                    f"TSE health check failed for organization {self.organization_id}, "
                    f"continuing without fiscal signing"
                )
                await client.aclose()
                return False

            try:
                await client.initialize_tss()
            except TseError as e:
                # An already initialized TSS is the normal case
                logger.warning(f"TSS initialization step skipped for organization {self.organization_id}: {e}")

            await client.ensure_client_registered()
        except TseError as e:
            self.last_error = e
            logger.error(f"TSE initialization failed for organization {self.organization_id}: {e}")
            await client.aclose()
            return False
        except Exception as e:
            logger.exception(f"Unexpected TSE error initializing organization {self.organization_id}")
            self.last_error = TseError(f"Unexpected TSE error: {e}")
            await client.aclose()
            return False

        self._client = client
        self._enabled = True
        logger.info(
            f"TSE enabled for organization {self.organization_id} "
            f"(tss={config.tss_id}, client={config.client_id}, env={config.environment})"
        )
        return True

    async def try_sign(
        self,
        tx_id: str,
        total_amount: float,
        payment_method: str,
        items: Iterable[Union[SaleItem, Mapping[str, Any]]],
    ) -> SigningResult:
        """Start and finish the fiscal transaction ``tx_id``.

        Finish is attempted only after a successful start. A transaction
        left ACTIVE by a failed finish is cancelled best-effort.
        """
        if not self.is_enabled():
            return SigningResult(error=NotEnabled("TSE is not enabled"))

        result = SigningResult()
        async with self.in_use():
            try:
                await self._client.start_transaction(tx_id)
                result.started = True
                result.signature = await self._client.finish_transaction(
                    tx_id, total_amount, payment_method, list(items)
                )
            except TseError as e:
                result.error = e
            except Exception as e:
                logger.exception(f"Unexpected TSE error for transaction {tx_id}")
                result.error = TseError(f"Unexpected TSE error: {e}")

            if result.error is not None:
                logger.error(
                    f"TSE signing failed for organization {self.organization_id}, "
                    f"transaction {tx_id}: {result.error} (detail={result.error.detail!r})"
                )
                if result.started:
                    await self.cancel_transaction(tx_id)
        return result

    async def sign_transaction(
        self,
        tx_id: str,
        total_amount: float,
        payment_method: str,
        items: Iterable[Union[SaleItem, Mapping[str, Any]]],
    ) -> Optional[TseSignatureData]:
        """Sign a sale, or return None when it has to proceed unsigned.

        This is the only place signing errors are dropped. Checkout treats
        None as "no fiscal signature" and completes the sale anyway.
        """
        if not self.is_enabled():
            return None
        result = await self.try_sign(tx_id, total_amount, payment_method, items)
        return result.signature

    async def cancel_transaction(self, tx_id: str) -> bool:
        """Cancel an ACTIVE fiscal transaction. Never raises."""
        if not self.is_enabled():
            return False
        async with self.in_use():
            try:
                await self._client.cancel_transaction(tx_id)
            except Exception as e:
                logger.warning(f"TSE cancel failed for transaction {tx_id}: {e}")
                return False
        logger.info(f"TSE transaction {tx_id} cancelled")
        return True

    async def export_compliance(
        self,
        start: Union[date, datetime, str],
        end: Union[date, datetime, str],
    ) -> bytes:
        if not self.is_enabled():
            raise NotEnabled("TSE is not enabled")
        async with self.in_use():
            return await self._client.export_compliance(start, end)

    @asynccontextmanager
    async def in_use(self) -> AsyncIterator["TseManager"]:
        """Mark a call in flight; a retired manager closes after the last one."""
        self._in_flight += 1
        try:
            yield self
        finally:
            self._in_flight -= 1
            if self._retired and self._in_flight == 0:
                await self.aclose()

    async def retire(self) -> None:
        """Close now, or after the calls still in flight have finished."""
        self._retired = True
        if self._in_flight == 0:
            await self.aclose()

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def aclose(self) -> None:
        self._enabled = False
        await self._close_client()
