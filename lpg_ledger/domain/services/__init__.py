"""
Domain Services
"""
from lpg_ledger.domain.services.ledger_service import LedgerService
from lpg_ledger.domain.services.replay_service import ReplayService

__all__ = [
    "LedgerService",
    "ReplayService",
]
