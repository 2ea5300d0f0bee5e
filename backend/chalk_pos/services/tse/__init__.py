"""Fiskaly Cloud TSE integration (German KassenSichV fiscal signing)."""

from chalk_pos.services.tse.errors import (
    AdminAuthFailed,
    AuthenticationFailed,
    ClientRegistrationFailed,
    ExportFailed,
    InitializationTimeout,
    NotConfigured,
    NotEnabled,
    TransactionCancelFailed,
    TransactionFinishFailed,
    TransactionStartFailed,
    TseError,
    TssStateTransitionFailed,
)
from chalk_pos.services.tse.fiskaly_client import (
    FiskalyClient,
    FiskalyConfig,
    SaleItem,
    TseSignatureData,
    TssState,
    calculate_vat_amounts,
)
from chalk_pos.services.tse.config_store import FiscalConfig, TseConfigStore
from chalk_pos.services.tse.manager import SigningResult, TseManager
from chalk_pos.services.tse.registry import TseManagerRegistry, get_tse_registry

__all__ = [
    "AdminAuthFailed",
    "AuthenticationFailed",
    "ClientRegistrationFailed",
    "ExportFailed",
    "InitializationTimeout",
    "NotConfigured",
    "NotEnabled",
    "TransactionCancelFailed",
    "TransactionFinishFailed",
    "TransactionStartFailed",
    "TseError",
    "TssStateTransitionFailed",
    "FiskalyClient",
    "FiskalyConfig",
    "SaleItem",
    "TseSignatureData",
    "TssState",
    "calculate_vat_amounts",
    "FiscalConfig",
    "TseConfigStore",
    "SigningResult",
    "TseManager",
    "TseManagerRegistry",
    "get_tse_registry",
]
