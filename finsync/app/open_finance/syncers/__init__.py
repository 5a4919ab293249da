from .base import SyncResult
from .accounts import AccountSyncer
from .transactions import TransactionSyncer
from .bills import BillSyncer
from .investments import InvestmentSyncer
from .loans import LoanSyncer

__all__ = [
    "SyncResult",
    "AccountSyncer",
    "TransactionSyncer",
    "BillSyncer",
    "InvestmentSyncer",
    "LoanSyncer",
]
