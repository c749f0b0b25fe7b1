"""
Adapters package for the Rules Service.

Contains client wrappers for the external stores. These adapters
encapsulate:

- Base URLs and request shapes
- Error handling that maps driver failures to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .clickhouse_client import ClickHouseClient

__all__ = [
    "ClickHouseClient",
]
