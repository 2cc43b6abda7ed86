import pytest

from config import (
    DEFAULT_TAKE_PROFIT_LEVELS,
    RiskConfig,
    TakeProfitLevel,
    load_config,
    parse_take_profit_levels,
)

ENV_KEYS = [
    "MODE", "BUY_MODE", "BALANCE_PERCENTAGE", "RESERVE_SOL", "TELEGRAM_CHAT_IDS",
    "TAKE_PROFIT_LEVELS", "TRAILING_ENABLED", "INITIAL_STOP_LOSS_PERCENT", "MAX_QUEUE_SIZE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    config = load_config()

    assert config.mode == "simulation"
    assert config.is_simulation is True
    assert config.buy.buy_mode == "percentage"
    assert config.buy.reserve_sol == 0.2
    assert config.risk.initial_stop_loss_pct == 60.0
    assert config.risk.take_profit_levels == DEFAULT_TAKE_PROFIT_LEVELS
    assert config.max_queue_size == 5
    assert config.telegram_chat_ids == []


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("MODE", "REAL")
    monkeypatch.setenv("BUY_MODE", "fixed")
    monkeypatch.setenv("RESERVE_SOL", "0.5")
    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "123, -456,abc")
    monkeypatch.setenv("TRAILING_ENABLED", "no")
    monkeypatch.setenv("MAX_QUEUE_SIZE", "not-a-number")
    monkeypatch.setenv("TAKE_PROFIT_LEVELS", "50:40:half;20:20")

    config = load_config()

    assert config.mode == "real"
    assert config.is_simulation is False
    assert config.buy.buy_mode == "fixed"
    assert config.buy.reserve_sol == 0.5
    assert config.telegram_chat_ids == [123, -456]
    assert config.risk.trailing_enabled is False
    assert config.max_queue_size == 5
    assert [lvl.profit_pct for lvl in config.risk.take_profit_levels] == [20.0, 50.0]


def test_unknown_modes_fall_back(monkeypatch):
    monkeypatch.setenv("MODE", "yolo")
    monkeypatch.setenv("BUY_MODE", "martingale")

    config = load_config()

    assert config.mode == "simulation"
    assert config.buy.buy_mode == "percentage"


def test_parse_take_profit_levels():
    levels = parse_take_profit_levels("30:15:Quick profit lock; 75:25 ;")

    assert levels == (
        TakeProfitLevel(30.0, 15.0, "Quick profit lock"),
        TakeProfitLevel(75.0, 25.0, ""),
    )


@pytest.mark.parametrize("raw", ["30", "x:15", "30:y"])
def test_parse_take_profit_levels_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_take_profit_levels(raw)


def test_ladder_is_sorted():
    risk = RiskConfig(take_profit_levels=(TakeProfitLevel(80, 10), TakeProfitLevel(20, 10)))

    assert [lvl.profit_pct for lvl in risk.take_profit_levels] == [20, 80]


def test_ladder_cannot_sell_more_than_everything():
    with pytest.raises(ValueError):
        RiskConfig(take_profit_levels=(TakeProfitLevel(10, 60), TakeProfitLevel(20, 50)))


@pytest.mark.parametrize("kwargs", [
    {"initial_stop_loss_pct": 0},
    {"initial_stop_loss_pct": 120},
    {"trailing_distance_pct": 100},
])
def test_invalid_risk_values(kwargs):
    with pytest.raises(ValueError):
        RiskConfig(**kwargs)
