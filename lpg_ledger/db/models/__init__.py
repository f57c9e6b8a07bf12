"""
Database Models
"""
from lpg_ledger.db.models.customer import Customer, CustomerCylinderDue
from lpg_ledger.db.models.transaction import LedgerTransaction
from lpg_ledger.db.models.transaction_item import TransactionItem
from lpg_ledger.db.models.balance_checkpoint import BalanceCheckpoint
from lpg_ledger.db.models.stock import CylinderStock, AccessoryStock

__all__ = [
    "Customer",
    "CustomerCylinderDue",
    "LedgerTransaction",
    "TransactionItem",
    "BalanceCheckpoint",
    "CylinderStock",
    "AccessoryStock",
]
