"""
Database module for the InsiderGuard policy engine
Provides SQLAlchemy models and database utilities
"""

from insiderguard.db.base import Base, Database
from insiderguard.db.models import (
    PolicyRow,
    ConditionRow,
    ActionRow,
    ExecutionRow,
    LedgerRow,
)

__all__ = [
    "Base",
    "Database",
    "PolicyRow",
    "ConditionRow",
    "ActionRow",
    "ExecutionRow",
    "LedgerRow",
]
