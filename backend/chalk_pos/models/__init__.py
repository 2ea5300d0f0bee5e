"""SQLAlchemy models."""

from chalk_pos.models.tse import TseConfiguration
from chalk_pos.models.transaction import Transaction, TransactionStatus

__all__ = ["TseConfiguration", "Transaction", "TransactionStatus"]
