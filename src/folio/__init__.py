"""Folio order lifecycle package."""

from .config import (
    BrokerConfig,
    FolioConfig,
    HistoryConfig,
    LoggingConfig,
    OrderConfig,
    RegistryConfig,
    load_config,
    save_config,
)

__all__ = [
    "BrokerConfig",
    "FolioConfig",
    "HistoryConfig",
    "LoggingConfig",
    "OrderConfig",
    "RegistryConfig",
    "load_config",
    "save_config",
]
