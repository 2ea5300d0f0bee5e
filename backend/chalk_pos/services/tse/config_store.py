"""Persistence of per-organization fiscal configuration.

The signing path only ever reads the active configuration through
``TseConfigStore``. Writes happen from the admin routes and the bootstrap
script via the module-level functions below.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from chalk_pos.models.tse import TseConfiguration
from chalk_pos.services.tse.errors import NotConfigured
from chalk_pos.services.tse.fiskaly_client import FiskalyConfig

logger = logging.getLogger(__name__)

# Placeholder the admin UI sends back for secrets it only saw masked
SECRET_MASK = "*****"

SECRET_FIELDS = ("api_key", "api_secret", "admin_pin")
REQUIRED_FIELDS = ("api_key", "api_secret", "tss_id", "client_id")
ENVIRONMENTS = ("sandbox", "production")


@dataclass
class FiscalConfig:
    """Snapshot of an organization's TSE configuration."""
    organization_id: str
    api_key: str
    api_secret: str
    tss_id: str
    client_id: str
    admin_pin: Optional[str] = None
    environment: str = "sandbox"
    is_active: bool = True

    @classmethod
    def from_model(cls, row: TseConfiguration) -> "FiscalConfig":
        return cls(
            organization_id=row.organization_id,
            api_key=row.api_key,
            api_secret=row.api_secret,
            tss_id=row.tss_id,
            client_id=row.client_id,
            admin_pin=row.admin_pin,
            environment=row.environment,
            is_active=row.is_active,
        )

    def is_complete(self) -> bool:
        return all(getattr(self, name) for name in REQUIRED_FIELDS)

    def to_fiskaly_config(self) -> FiskalyConfig:
        return FiskalyConfig(
            api_key=self.api_key,
            api_secret=self.api_secret,
            tss_id=self.tss_id,
            client_id=self.client_id,
            environment=self.environment,
            admin_pin=self.admin_pin,
        )


def get_config(db: Session, organization_id: str) -> Optional[TseConfiguration]:
    return (
        db.query(TseConfiguration)
        .filter(TseConfiguration.organization_id == organization_id)
        .first()
    )


def get_active_config(db: Session, organization_id: str) -> Optional[FiscalConfig]:
    row = get_config(db, organization_id)
    if row is None or not row.is_active:
        return None
    return FiscalConfig.from_model(row)


def require_active_config(db: Session, organization_id: str) -> FiscalConfig:
    config = get_active_config(db, organization_id)
    if config is None:
        raise NotConfigured("TSE configuration not found")
    if not config.is_complete():
        raise NotConfigured("TSE configuration is incomplete")
    return config


def save_config(db: Session, organization_id: str, values: Mapping[str, Any]) -> TseConfiguration:
    """Create or update the configuration of ``organization_id``.

    Secret fields equal to ``SECRET_MASK`` (or omitted) keep their stored
    value. A new configuration needs every required field.
    """
    row = get_config(db, organization_id)
    if row is None:
        row = TseConfiguration(organization_id=organization_id)
        db.add(row)

    for field in SECRET_FIELDS:
        value = values.get(field)
        if value is None or value == SECRET_MASK:
            continue
        if field == "admin_pin" and not value:
            value = None  # empty string clears the PIN
        setattr(row, field, value)

    for field in ("tss_id", "client_id"):
        if values.get(field):
            setattr(row, field, values[field])

    environment = values.get("environment")
    if environment:
        if environment not in ENVIRONMENTS:
            raise ValueError(f"Unknown environment {environment!r}")
        row.environment = environment
    elif row.environment is None:
        row.environment = "sandbox"

    if values.get("is_active") is not None:
        row.is_active = bool(values["is_active"])
    elif row.is_active is None:
        row.is_active = True

    missing = [field for field in REQUIRED_FIELDS if not getattr(row, field)]
    if missing:
        db.rollback()
        raise NotConfigured(f"Missing required TSE settings: {', '.join(missing)}")

    db.commit()
    db.refresh(row)
    logger.info(
        f"TSE configuration saved for organization {organization_id} "
        f"(environment={row.environment}, active={row.is_active})"
    )
    return row


def deactivate_config(db: Session, organization_id: str) -> bool:
    """Mark the configuration inactive. Returns False when none exists."""
    row = get_config(db, organization_id)
    if row is None:
        return False
    row.is_active = False
    db.commit()
    logger.info(f"TSE configuration deactivated for organization {organization_id}")
    return True


class TseConfigStore:
    """Read side used by ``TseManager``; opens a short-lived session per load."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def load_active(self, organization_id: str) -> Optional[FiscalConfig]:
        db = self._session_factory()
        try:
            return get_active_config(db, organization_id)
        finally:
            db.close()

    def deactivate(self, organization_id: str) -> bool:
        db = self._session_factory()
        try:
            return deactivate_config(db, organization_id)
        finally:
            db.close()
