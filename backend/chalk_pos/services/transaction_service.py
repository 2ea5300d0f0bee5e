"""Transaction Service - Persists sales and attaches the fiscal signature.

Flow:
1. Sale committed locally (the sale exists no matter what happens next)
2. The organization's TSE manager signs it under the sale id
3. On success the signature snapshot is written to ``tse_data``
4. On failure the sale stays as is, without ``tse_data``

Cancelling a sale is local only. A FINISHED fiscal transaction cannot be
cancelled remotely; voiding it needs a storno receipt.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from chalk_pos.models.transaction import Transaction, TransactionStatus
from chalk_pos.schemas.transaction import SaleItemIn, TransactionCreate
from chalk_pos.services.tse.registry import TseManagerRegistry

logger = logging.getLogger(__name__)


class TransactionNotFoundError(Exception):
    """Raised when a sale does not exist for the organization."""
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class TransactionStateError(Exception):
    """Raised when a sale cannot move to the requested status."""
    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction {transaction_id} is already {status}")


def _item_to_json(item: SaleItemIn) -> Dict[str, Any]:
    return {
        "name": item.name,
        "price": float(item.price),
        "quantity": float(item.quantity),
        "vat_rate": float(item.vat_rate) if item.vat_rate is not None else None,
    }


class TransactionService:
    """Checkout for one organization."""

    def __init__(self, db: Session, registry: TseManagerRegistry):
        self.db = db
        self.registry = registry

    def get(self, organization_id: str, transaction_id: str) -> Transaction:
        transaction = (
            self.db.query(Transaction)
            .filter(
                Transaction.id == transaction_id,
                Transaction.organization_id == organization_id,
            )
            .first()
        )
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def create_sale(
        self,
        organization_id: str,
        data: TransactionCreate,
        created_by: Optional[str] = None,
    ) -> Transaction:
        items: List[Dict[str, Any]] = [_item_to_json(item) for item in data.items]
        transaction = Transaction(
            organization_id=organization_id,
            total_amount=data.total_amount,
            payment_method=data.payment_method,
            items=items,
            status=TransactionStatus.COMPLETED,
            created_by=created_by,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)

        manager = await self.registry.get(organization_id)
        signature = await manager.sign_transaction(
            transaction.id,
            float(transaction.total_amount),
            transaction.payment_method,
            items,
        )

        if signature is None:
            if manager.is_enabled():
                logger.warning(f"Sale {transaction.id} completed without TSE signature")
            return transaction

        transaction.tse_data = signature.to_dict()
        self.db.commit()
        self.db.refresh(transaction)
        logger.info(
            f"Sale {transaction.id} signed (tx number {signature.transaction_number}, "
            f"counter {signature.signature_counter})"
        )
        return transaction

    def cancel_sale(self, organization_id: str, transaction_id: str) -> Transaction:
        transaction = self.get(organization_id, transaction_id)
        if transaction.status == TransactionStatus.CANCELLED:
            raise TransactionStateError(transaction_id, transaction.status)
        transaction.status = TransactionStatus.CANCELLED
        self.db.commit()
        self.db.refresh(transaction)
        logger.info(f"Sale {transaction_id} cancelled locally")
        return transaction
