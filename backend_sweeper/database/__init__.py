"""Storage layer: SQLAlchemy tables, domain models, WalletRegistry and PersistenceLedger."""

from backend_sweeper.database.database import Database
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.registry import WalletFilter, WalletRegistry

__all__ = ["Database", "PersistenceLedger", "WalletFilter", "WalletRegistry"]
