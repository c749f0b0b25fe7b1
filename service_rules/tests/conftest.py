"""
Shared fixtures for Rules service tests.
"""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from shared.metrics import get_metrics_collector
from service_rules.app.persistence.documents import Documents
from service_rules.app.persistence.tables import Tables


@pytest.fixture
def metrics():
    """Metrics collector on a private registry."""
    return get_metrics_collector("rules", CollectorRegistry())


@pytest.fixture
def documents():
    """Document store double recording collection calls."""
    docs = AsyncMock(spec=Documents)
    docs.delete_many.return_value = 0
    docs.find.return_value = []
    return docs


@pytest.fixture
def clickhouse():
    """ClickHouse client double."""
    client = AsyncMock()
    client.query.return_value = {"data": []}
    return client


@pytest.fixture
def tables(clickhouse, metrics):
    return Tables(clickhouse, database="rules", metrics=metrics)
