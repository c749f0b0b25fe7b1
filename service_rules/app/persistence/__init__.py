"""
Persistence package for the Rules Service.

- documents: canonical rule and table content (PostgreSQL JSONB).
- tables: query-shaped projections of rules (ClickHouse).
"""

from .documents import Documents
from .tables import Condition, InsertStatement, SelectStatement, Tables

__all__ = [
    "Documents",
    "Tables",
    "InsertStatement",
    "SelectStatement",
    "Condition",
]
