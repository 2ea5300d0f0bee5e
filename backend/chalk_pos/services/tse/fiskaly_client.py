"""
Fiskaly Cloud TSE client (KassenSichV, API v2)

Handles all interactions with the fiskaly Cloud TSE API for German fiscal
compliance:
- Bearer token authentication with local caching
- TSS state machine (CREATED -> UNINITIALIZED -> INITIALIZED -> DISABLED)
- Client (POS terminal) registration
- Transaction start / finish / cancel with signature retrieval
- DSFinV-K / TAR export

One client instance is bound to one TSS and one client id. Every method
raises a ``TseError`` subclass on failure; deciding whether a failure is
fatal is left to the caller.

See https://developer.fiskaly.com/api/kassensichv/v2
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from datetime import time as dt_time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

import httpx

from chalk_pos.core.config import settings
from chalk_pos.services.tse.errors import (
    AdminAuthFailed,
    AuthenticationFailed,
    ClientRegistrationFailed,
    ExportFailed,
    InitializationTimeout,
    NotConfigured,
    TransactionCancelFailed,
    TransactionFinishFailed,
    TransactionStartFailed,
    TseError,
    TssStateTransitionFailed,
)
from chalk_pos.services.tse.polling import PollingTimeout, wait_until
from chalk_pos.services.tse.token_cache import FiskalyTokenAuth, TokenCache, utcnow

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")


class TssState(str, Enum):
    """Remote TSS lifecycle states."""
    CREATED = "CREATED"
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    INITIALIZED = "INITIALIZED"
    DISABLED = "DISABLED"


class TransactionState(str, Enum):
    """Remote transaction states."""
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    """DSFinV-K payment types used in receipts."""
    CASH = "CASH"
    CARD = "CARD"

    @classmethod
    def from_method(cls, payment_method: str) -> "PaymentType":
        return cls.CASH if payment_method == "cash" else cls.CARD


@dataclass
class FiskalyConfig:
    """Credentials and identifiers a client is bound to."""
    api_key: str
    api_secret: str
    tss_id: str
    client_id: str
    environment: str = "sandbox"
    admin_pin: Optional[str] = None


@dataclass
class SaleItem:
    """Line item of a sale, as needed for the VAT breakdown."""
    name: str
    price: float
    quantity: float = 1
    vat_rate: Optional[float] = None  # percent, e.g. 19 or 7

    @property
    def total(self) -> Decimal:
        return Decimal(str(self.price)) * Decimal(str(self.quantity))

    @classmethod
    def coerce(cls, item: Union["SaleItem", Mapping[str, Any]]) -> "SaleItem":
        if isinstance(item, cls):
            return item
        return cls(
            name=item.get("name", ""),
            price=item["price"],
            quantity=item.get("quantity", 1),
            vat_rate=item.get("vat_rate"),
        )


@dataclass
class TseSignatureData:
    """Signature snapshot stored alongside the local sale."""
    transaction_number: int
    signature_value: str
    signature_algorithm: Optional[str]
    signature_counter: int
    time_start: int
    time_end: int
    tss_id: str
    client_id: str
    qr_code_data: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_amount(value: Decimal) -> str:
    return str(value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def calculate_vat_amounts(
    items: Iterable[Union[SaleItem, Mapping[str, Any]]],
    default_vat_rate: Optional[float] = None,
) -> List[Dict[str, str]]:
    """Group item totals per VAT rate.

    Items without a ``vat_rate`` are counted at the default rate (19%).
    Rates are emitted as fractions with four decimals ("19" -> "0.1900"),
    amounts with two decimals, in order of first appearance.
    """
    if default_vat_rate is None:
        default_vat_rate = settings.tse_default_vat_rate

    totals: Dict[Decimal, Decimal] = {}
    for raw in items:
        item = SaleItem.coerce(raw)
        rate = Decimal(str(item.vat_rate if item.vat_rate is not None else default_vat_rate))
        totals[rate] = totals.get(rate, Decimal("0")) + item.total

    return [
        {
            "vat_rate": str((rate / 100).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)),
            "amount": format_amount(amount),
        }
        for rate, amount in totals.items()
    ]


def _iso_bound(value: Union[date, datetime, str], end: bool = False) -> str:
    """ISO-8601 timestamp for an export bound; whole days are inclusive."""
    if isinstance(value, str):
        return value
    if not isinstance(value, datetime):
        value = datetime.combine(value, dt_time.max if end else dt_time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _error_detail(exc: httpx.HTTPError) -> Tuple[Optional[int], Any, Optional[str]]:
    """Extract (status, body, remote message) from an httpx error."""
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = response.text
        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
        elif body:
            message = str(body)[:500]
        return response.status_code, body, message
    return None, None, str(exc) or exc.__class__.__name__


class FiskalyClient:
    """Async client for one TSS / client-id pair."""

    def __init__(
        self,
        config: FiskalyConfig,
        *,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_lifetime: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        default_vat_rate: Optional[float] = None,
    ):
        self.config = config
        self.base_url = base_url or settings.fiskaly_base_url(config.environment)
        self.poll_attempts = poll_attempts or settings.tse_poll_attempts
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.tse_poll_interval_seconds
        )
        self.default_vat_rate = (
            default_vat_rate if default_vat_rate is not None else settings.tse_default_vat_rate
        )
        self._tokens = TokenCache(
            token_lifetime or timedelta(minutes=settings.fiskaly_token_lifetime_minutes),
            clock=clock,
        )
        self._token_lock = asyncio.Lock()
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            auth=FiskalyTokenAuth(self),
            transport=transport,
        )

    @property
    def tss_id(self) -> str:
        return self.config.tss_id

    @property
    def client_id(self) -> str:
        return self.config.client_id

    async def __aenter__(self) -> "FiskalyClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _wrap(self, error_cls: Type[TseError], message: str, exc: httpx.HTTPError) -> TseError:
        status_code, body, remote_message = _error_detail(exc)
        if remote_message:
            message = f"{message}: {remote_message}"
        logger.error(f"[Fiskaly] {message} (tss={self.tss_id}, status={status_code}, body={body!r})")
        return error_cls(message, status_code=status_code, detail=body)

    async def _request(
        self,
        method: str,
        path: str,
        error_cls: Type[TseError],
        message: str,
        **kwargs,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._wrap(error_cls, message, exc) from exc
        return response

    def _json(self, response: httpx.Response, error_cls: Type[TseError], message: str) -> Dict[str, Any]:
        """Decode a response body that must be a JSON object."""
        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls(
                f"{message}: invalid JSON response",
                status_code=response.status_code,
                detail=response.text[:500],
            ) from exc
        if not isinstance(body, dict):
            raise error_cls(
                f"{message}: expected a JSON object",
                status_code=response.status_code,
                detail=body,
            )
        return body

    def _tx_path(self, tx_id: str) -> str:
        return f"/tss/{self.tss_id}/tx/{tx_id}"

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_token(self) -> str:
        """Return a bearer token, authenticating only when the cached one expired."""
        if self._tokens.is_valid():
            return self._tokens.token

        async with self._token_lock:
            # Another coroutine may have refreshed while we waited
            if self._tokens.is_valid():
                return self._tokens.token

            try:
                response = await self._http.post(
                    "/auth",
                    json={"api_key": self.config.api_key, "api_secret": self.config.api_secret},
                    auth=None,
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                self._tokens.clear()
                raise self._wrap(
                    AuthenticationFailed, "Failed to authenticate with TSE service", exc
                ) from exc

            token = self._json(response, AuthenticationFailed, "Invalid auth response from fiskaly").get(
                "access_token"
            )
            if not token or not isinstance(token, str):
                raise AuthenticationFailed("No access token received from fiskaly")

            logger.debug(f"[Fiskaly] Obtained access token for TSS {self.tss_id}")
            return self._tokens.store(token)

    def invalidate_token(self, token: str) -> None:
        """Forget ``token`` if it is still the cached one."""
        if self._tokens.token == token:
            self._tokens.clear()

    async def authenticate_admin(self, admin_pin: Optional[str] = None) -> None:
        """Open an elevated admin session on the TSS with the admin PIN."""
        pin = admin_pin or self.config.admin_pin
        if not pin:
            raise NotConfigured("Admin PIN is not configured")
        await self._request(
            "POST",
            f"/tss/{self.tss_id}/admin/auth",
            AdminAuthFailed,
            "Admin authentication failed",
            json={"admin_pin": pin},
        )

    # ------------------------------------------------------------------
    # TSS state machine
    # ------------------------------------------------------------------

    async def get_tss(self) -> Dict[str, Any]:
        response = await self._request("GET", f"/tss/{self.tss_id}", TseError, "Failed to fetch TSS")
        return self._json(response, TseError, "Failed to fetch TSS")

    async def get_tss_state(self) -> TssState:
        data = await self.get_tss()
        try:
            return TssState(data.get("state"))
        except ValueError:
            raise TseError(f"Unknown TSS state {data.get('state')!r}", detail=data)

    async def set_tss_state(self, state: TssState) -> TssState:
        """PATCH the TSS to ``state``; returns the state the server reports back."""
        response = await self._request(
            "PATCH",
            f"/tss/{self.tss_id}",
            TssStateTransitionFailed,
            f"Failed to transition TSS to {state.value}",
            json={"state": state.value},
        )
        try:
            body = response.json()
        except ValueError:
            return state
        reported = body.get("state") if isinstance(body, dict) else None
        try:
            return TssState(reported) if reported else state
        except ValueError:
            return state

    async def initialize_tss(self) -> TssState:
        """Move a freshly CREATED TSS to UNINITIALIZED. No-op in any other state."""
        state = await self.get_tss_state()
        logger.info(f"[Fiskaly] TSS {self.tss_id} state: {state.value}")
        if state == TssState.CREATED:
            state = await self.set_tss_state(TssState.UNINITIALIZED)
            logger.info(f"[Fiskaly] TSS {self.tss_id} moved to {state.value}")
        return state

    async def wait_for_state(
        self,
        target: TssState,
        attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> TssState:
        """Poll the TSS until it reports ``target``."""
        attempts = attempts or self.poll_attempts
        interval = interval if interval is not None else self.poll_interval
        try:
            return await wait_until(
                self.get_tss_state,
                lambda state: state == target,
                attempts=attempts,
                interval=interval,
            )
        except PollingTimeout as exc:
            last = exc.last_value.value if exc.last_value is not None else None
            raise InitializationTimeout(
                f"TSS did not reach {target.value} after {exc.attempts} attempts (state: {last})",
                last_state=last,
                attempts=exc.attempts,
            ) from exc

    async def provision_tss(
        self,
        admin_pin: Optional[str] = None,
        attempts: Optional[int] = None,
        interval: Optional[float] = None,
        on_step: Optional[Callable[[str], None]] = None,
    ) -> TssState:
        """Drive the TSS from whatever state it is in up to INITIALIZED."""

        def step(message: str) -> None:
            logger.info(f"[Fiskaly] {message}")
            if on_step:
                on_step(message)

        state = await self.get_tss_state()
        step(f"TSS state: {state.value}")

        if state == TssState.DISABLED:
            raise TssStateTransitionFailed("TSS is DISABLED and cannot be initialized")

        if state == TssState.CREATED:
            state = await self.set_tss_state(TssState.UNINITIALIZED)
            step(f"TSS state: {state.value}")

        if state == TssState.UNINITIALIZED:
            await self.authenticate_admin(admin_pin)
            step("Admin authenticated")
            state = await self.set_tss_state(TssState.INITIALIZED)
            step(f"Initialization requested, TSS state: {state.value}")

        if state != TssState.INITIALIZED:
            step("Waiting for initialization")
            state = await self.wait_for_state(TssState.INITIALIZED, attempts, interval)

        step("TSS initialized")
        return state

    async def disable_tss(self, admin_pin: Optional[str] = None) -> TssState:
        """Permanently disable the TSS. Requires the admin PIN."""
        await self.authenticate_admin(admin_pin)
        return await self.set_tss_state(TssState.DISABLED)

    # ------------------------------------------------------------------
    # Client registration
    # ------------------------------------------------------------------

    async def ensure_client_registered(self) -> None:
        """Register this client id under the TSS; an existing registration is success."""
        try:
            response = await self._http.put(
                f"/tss/{self.tss_id}/client/{self.client_id}",
                json={"serial_number": self.client_id},
            )
            if response.status_code == httpx.codes.CONFLICT:
                logger.debug(f"[Fiskaly] Client {self.client_id} already registered")
                return
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._wrap(ClientRegistrationFailed, "Failed to register client", exc) from exc
        logger.info(f"[Fiskaly] Client {self.client_id} registered/verified")

    async def is_client_registered(self) -> bool:
        try:
            response = await self._http.get(f"/tss/{self.tss_id}/client/{self.client_id}")
        except httpx.HTTPError as exc:
            raise self._wrap(TseError, "Failed to fetch client", exc) from exc
        return response.is_success

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def start_transaction(self, tx_id: str, revision: Optional[int] = 1) -> Dict[str, Any]:
        """Open the remote transaction ``tx_id`` in state ACTIVE."""
        params = {"tx_revision": revision} if revision is not None else None
        response = await self._request(
            "PUT",
            self._tx_path(tx_id),
            TransactionStartFailed,
            "Failed to start TSE transaction",
            params=params,
            json={"state": TransactionState.ACTIVE.value, "client_id": self.client_id},
        )
        return self._json(response, TransactionStartFailed, "Failed to start TSE transaction")

    def build_receipt_schema(
        self,
        total_amount: float,
        payment_method: str,
        items: Iterable[Union[SaleItem, Mapping[str, Any]]],
    ) -> Dict[str, Any]:
        return {
            "standard_v1": {
                "receipt": {
                    "receipt_type": "RECEIPT",
                    "amounts_per_vat_rate": calculate_vat_amounts(items, self.default_vat_rate),
                    "amounts_per_payment_type": [
                        {
                            "payment_type": PaymentType.from_method(payment_method).value,
                            "amount": format_amount(Decimal(str(total_amount))),
                        }
                    ],
                }
            }
        }

    async def finish_transaction(
        self,
        tx_id: str,
        total_amount: float,
        payment_method: str,
        items: Iterable[Union[SaleItem, Mapping[str, Any]]],
        revision: Optional[int] = 2,
    ) -> TseSignatureData:
        """Finish ``tx_id`` with the receipt breakdown and return its signature."""
        params = {"tx_revision": revision} if revision is not None else None
        response = await self._request(
            "PUT",
            self._tx_path(tx_id),
            TransactionFinishFailed,
            "Failed to finish TSE transaction",
            params=params,
            json={
                "state": TransactionState.FINISHED.value,
                "client_id": self.client_id,
                "schema": self.build_receipt_schema(total_amount, payment_method, items),
            },
        )

        data = self._json(response, TransactionFinishFailed, "Failed to finish TSE transaction")
        try:
            signature = data["signature"]
            return TseSignatureData(
                transaction_number=data["number"],
                signature_value=signature["value"],
                signature_algorithm=signature.get("algorithm"),
                signature_counter=signature["counter"],
                time_start=data["time_start"],
                time_end=data.get("time_end") or int(time.time()),
                qr_code_data=data.get("qr_code_data"),
                tss_id=self.tss_id,
                client_id=self.client_id,
            )
        except (KeyError, TypeError) as exc:
            raise TransactionFinishFailed(
                f"Malformed signature in fiskaly response: missing {exc}", detail=data
            ) from exc

    async def cancel_transaction(self, tx_id: str, revision: Optional[int] = None) -> Dict[str, Any]:
        params = {"tx_revision": revision} if revision is not None else None
        response = await self._request(
            "PUT",
            self._tx_path(tx_id),
            TransactionCancelFailed,
            "Failed to cancel TSE transaction",
            params=params,
            json={"state": TransactionState.CANCELLED.value, "client_id": self.client_id},
        )
        return self._json(response, TransactionCancelFailed, "Failed to cancel TSE transaction")

    # ------------------------------------------------------------------
    # Export & health
    # ------------------------------------------------------------------

    async def export_compliance(
        self,
        start: Union[date, datetime, str],
        end: Union[date, datetime, str],
    ) -> bytes:
        """Request a TAR export covering ``start`` to ``end`` inclusive."""
        response = await self._request(
            "POST",
            f"/tss/{self.tss_id}/export",
            ExportFailed,
            "Failed to export DSFinV-K data",
            json={"start_date": _iso_bound(start), "end_date": _iso_bound(end, end=True)},
        )
        return response.content

    async def health_check(self) -> bool:
        """True when the credentials authenticate and the TSS can be read."""
        try:
            await self.get_token()
            await self.get_tss()
        except TseError as exc:
            logger.error(f"[Fiskaly] TSE health check failed for TSS {self.tss_id}: {exc}")
            return False
        return True
