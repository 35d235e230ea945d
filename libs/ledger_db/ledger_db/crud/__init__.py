# ledger_db/crud/__init__.py

from .alerts import BalanceAlertDAO
from .balance import BalanceSnapshotDAO
from .ledger import LedgerDAO

__all__ = ["BalanceAlertDAO", "BalanceSnapshotDAO", "LedgerDAO"]
