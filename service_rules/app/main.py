"""
Wiring for the Rules Service: configuration, logging and stores.
"""

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from .repository import RuleRepository

SERVICE_NAME = "rules"


def create_repository(
    config: Optional[ServiceConfig] = None,
    registry: Optional[CollectorRegistry] = REGISTRY,
) -> RuleRepository:
    """Build a RuleRepository from environment configuration."""
    config = config or get_config(SERVICE_NAME)
    configure_logging(config.service_name, config.log_level)

    repository = RuleRepository.from_config(config, get_metrics_collector(SERVICE_NAME, registry))
    get_logger(f"{SERVICE_NAME}.main").info(
        "Rule repository configured",
        env=config.env,
        projections_url=config.projections_url,
        projections_database=config.projections_database,
    )
    return repository
