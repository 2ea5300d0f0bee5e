# Services module

from chalk_pos.services.transaction_service import (
    TransactionService,
    TransactionNotFoundError,
    TransactionStateError,
)
