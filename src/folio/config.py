"""System configuration objects and helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass(slots=True)
class BrokerConfig:
    host: str = "127.0.0.1"
    port: int = 7496
    client_id: int = 1
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class OrderConfig:
    submit_timeout_seconds: float = 30.0
    order_id_timeout_seconds: float = 5.0
    exchange: str = "SMART"
    currency: str = "USD"
    tif: str = "DAY"


@dataclass(slots=True)
class RegistryConfig:
    cancel_timeout_seconds: float = 10.0
    open_orders_timeout_seconds: float = 10.0
    executions_timeout_seconds: float = 10.0


@dataclass(slots=True)
class HistoryConfig:
    base_dir: str = "~/.folio"
    min_interval_seconds: float = 300.0
    min_abs_move: float = 50.0
    min_rel_move: float = 0.001
    max_points: int = 50_000
    seed_offset_seconds: float = 60.0

    @property
    def resolved_base_dir(self) -> Path:
        return Path(self.base_dir).expanduser()


@dataclass(slots=True)
class LoggingConfig:
    logs_dir: str = "logs"
    level: str = "INFO"
    format_type: str = "text"
    enable_console: bool = True


@dataclass(slots=True)
class FolioConfig:
    account_id: str | None = None
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    orders: OrderConfig = field(default_factory=OrderConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FolioConfig":
        return FolioConfig(
            account_id=payload.get("account_id"),
            broker=BrokerConfig(**payload.get("broker", {})),
            orders=OrderConfig(**payload.get("orders", {})),
            registry=RegistryConfig(**payload.get("registry", {})),
            history=HistoryConfig(**payload.get("history", {})),
            logging=LoggingConfig(**payload.get("logging", {})),
        )


def load_config(path: str | Path) -> FolioConfig:
    """Load configuration from YAML."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    return FolioConfig.from_dict(payload)


def save_config(config: FolioConfig, path: str | Path) -> None:
    """Persist configuration to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.to_dict(), handle, sort_keys=False)
