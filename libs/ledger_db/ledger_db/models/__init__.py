# ledger_db/models/__init__.py
"""Import all models so Alembic can detect them for migrations."""

from ledger_db.models.ledger import BalanceAlertSent, CreditBalance, CreditLedgerEntry, LedgerReason

__all__ = ["BalanceAlertSent", "CreditBalance", "CreditLedgerEntry", "LedgerReason"]
