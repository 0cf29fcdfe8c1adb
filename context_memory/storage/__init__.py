from .ledger import SQLiteLedger
from .sqlite import SQLiteStore

__all__ = ["SQLiteLedger", "SQLiteStore"]
