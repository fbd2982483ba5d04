from __future__ import annotations

from folio.config import FolioConfig, HistoryConfig, load_config, save_config


def test_defaults_match_broker_timeouts() -> None:
    config = FolioConfig()
    assert config.broker.port == 7496
    assert config.orders.submit_timeout_seconds == 30.0
    assert config.orders.order_id_timeout_seconds == 5.0
    assert config.registry.cancel_timeout_seconds == 10.0
    assert config.history.max_points == 50_000
    assert config.history.min_interval_seconds == 300.0


def test_yaml_round_trip(tmp_path) -> None:
    config = FolioConfig(account_id="DU123", history=HistoryConfig(base_dir=str(tmp_path), max_points=10))
    config.orders.submit_timeout_seconds = 12.5
    path = tmp_path / "config" / "folio.yaml"

    save_config(config, path)
    loaded = load_config(path)

    assert loaded == config
    assert loaded.history.resolved_base_dir == tmp_path


def test_partial_yaml_keeps_defaults(tmp_path) -> None:
    path = tmp_path / "folio.yaml"
    path.write_text("account_id: U42\nregistry:\n  cancel_timeout_seconds: 3\n", encoding="utf-8")
    loaded = load_config(path)
    assert loaded.account_id == "U42"
    assert loaded.registry.cancel_timeout_seconds == 3
    assert loaded.registry.open_orders_timeout_seconds == 10.0
    assert loaded.orders.submit_timeout_seconds == 30.0
