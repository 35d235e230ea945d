from ledger_db.schemas.ledger import BalanceSnapshot, LedgerEntry, LedgerPage, LedgerTotals, TopConsumer

__all__ = ["BalanceSnapshot", "LedgerEntry", "LedgerPage", "LedgerTotals", "TopConsumer"]
