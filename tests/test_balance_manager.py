import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from balance_manager import BalanceFetchError, BalanceManager
from config import BuyConfig
from models import HealthStatus, SizingMode


def manager_with(total, clock, **buy):
    source = MagicMock()
    source.get_wallet_balance = AsyncMock(return_value=total)
    return BalanceManager(BuyConfig(**buy), source, clock=clock), source


def test_percentage_sizing(clock):
    manager, _ = manager_with(2.2, clock)

    snap = asyncio.run(manager.get_balance())

    assert snap.available_for_trading == pytest.approx(2.0)
    assert snap.next_buy_amount == pytest.approx(0.16)
    assert snap.percentage_used == 8.0
    assert snap.sizing_mode is SizingMode.PERCENTAGE


def test_percentage_sizing_is_clamped_to_max(clock):
    manager, _ = manager_with(20.2, clock)

    snap = asyncio.run(manager.get_balance())

    assert snap.next_buy_amount == 0.5


def test_percentage_sizing_is_raised_to_min(clock):
    manager, _ = manager_with(0.25, clock)

    snap = asyncio.run(manager.get_balance())

    assert snap.next_buy_amount == 0.005


def test_sizing_never_exceeds_available(clock):
    manager, _ = manager_with(0.203, clock)

    snap = asyncio.run(manager.get_balance())

    assert snap.next_buy_amount == pytest.approx(0.003)


def test_fixed_sizing(clock):
    manager, _ = manager_with(1.2, clock, buy_mode="fixed", sol_amount=0.05)

    snap = asyncio.run(manager.get_balance())

    assert snap.sizing_mode is SizingMode.FIXED
    assert snap.next_buy_amount == 0.05
    assert snap.percentage_used == pytest.approx(5.0)


def test_fixed_sizing_capped_by_available(clock):
    manager, _ = manager_with(0.23, clock, buy_mode="fixed", sol_amount=0.05)

    snap = asyncio.run(manager.get_balance())

    assert snap.next_buy_amount == pytest.approx(0.03)


def test_balance_is_cached_until_ttl(clock):
    manager, source = manager_with(2.0, clock)

    asyncio.run(manager.get_balance())
    clock.now += 1.0
    asyncio.run(manager.get_balance())
    assert source.get_wallet_balance.await_count == 1

    clock.now += 1.5
    asyncio.run(manager.get_balance())
    assert source.get_wallet_balance.await_count == 2

    asyncio.run(manager.get_balance(force_refresh=True))
    assert source.get_wallet_balance.await_count == 3

    manager.clear_cache()
    asyncio.run(manager.get_balance())
    assert source.get_wallet_balance.await_count == 4


def test_fetch_failure_raises(clock):
    manager, _ = manager_with(None, clock)

    with pytest.raises(BalanceFetchError):
        asyncio.run(manager.get_balance())


# -----------------------------------------------------------------------------
# can_afford
# -----------------------------------------------------------------------------


def test_can_afford_ok(clock):
    manager, _ = manager_with(2.0, clock)

    check = asyncio.run(manager.can_afford())

    assert check.can_trade is True
    assert check.available_amount == pytest.approx(0.144)


def test_cannot_afford_below_reserve(clock):
    manager, _ = manager_with(0.1, clock)

    check = asyncio.run(manager.can_afford())

    assert check.can_trade is False
    assert check.reason.startswith("Insufficient balance: 0.1000 SOL")


def test_cannot_afford_with_nothing_available(clock):
    manager, _ = manager_with(0.2, clock)

    check = asyncio.run(manager.can_afford())

    assert check.can_trade is False
    assert "after reserve" in check.reason


def test_cannot_afford_below_minimum(clock):
    manager, _ = manager_with(0.203, clock)

    check = asyncio.run(manager.can_afford())

    assert check.can_trade is False
    assert check.reason.startswith("Amount below minimum")
    assert check.recommended_amount == 0.005


def test_cannot_afford_when_fetch_fails(clock):
    manager, _ = manager_with(None, clock)

    check = asyncio.run(manager.can_afford())

    assert check.can_trade is False
    assert check.reason == "Error checking balance"


# -----------------------------------------------------------------------------
# Salud / reportes
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "total, status",
    [
        (0.3, HealthStatus.CRITICAL),
        (0.4, HealthStatus.CRITICAL),
        (0.9, HealthStatus.WARNING),
        (3.0, HealthStatus.HEALTHY),
    ],
)
def test_health_thresholds(clock, total, status):
    manager, _ = manager_with(total, clock)

    health = asyncio.run(manager.get_health())

    assert health.status is status


def test_few_trades_left_is_a_warning(clock):
    # 2.2 SOL con compras fijas de 1 SOL: sólo 2 compras posibles
    manager, _ = manager_with(2.2, clock, buy_mode="fixed", sol_amount=1.0)

    health = asyncio.run(manager.get_health())

    assert health.possible_trades == 2
    assert health.status is HealthStatus.WARNING


def test_check_balance_warnings_critical(clock):
    manager, _ = manager_with(0.3, clock)
    notifier = MagicMock()

    status = asyncio.run(manager.check_balance_warnings(notifier))

    assert status is HealthStatus.CRITICAL
    reason = notifier.notify_balance_warning.call_args.args[1]
    assert reason.startswith("CRITICAL")


def test_check_balance_warnings_healthy_is_silent(clock):
    manager, _ = manager_with(5.0, clock)
    notifier = MagicMock()

    asyncio.run(manager.check_balance_warnings(notifier))

    notifier.notify_balance_warning.assert_not_called()


def test_check_balance_warnings_survives_fetch_error(clock):
    manager, _ = manager_with(None, clock)
    notifier = MagicMock()

    assert asyncio.run(manager.check_balance_warnings(notifier)) is None


def test_stats_and_simulation(clock):
    manager, _ = manager_with(2.2, clock)

    stats = asyncio.run(manager.get_stats())
    assert stats["estimated_trades"] == 12
    assert stats["buy_mode"] == "percentage"

    rows = asyncio.run(manager.simulate_percentages([5.0, 50.0]))
    assert rows[0]["buy_amount"] == pytest.approx(0.1)
    assert rows[1]["buy_amount"] == 0.5
    assert rows[1]["number_of_trades"] == 4


def test_format_balance_info(clock):
    manager, _ = manager_with(2.2, clock)

    text = asyncio.run(manager.format_balance_info())

    assert "Total Balance: 2.2000 SOL" in text
    assert "PERCENTAGE (8%)" in text
