import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import SellResult
from trading_engine import TradingEngine, is_valid_token_address
from tests.helpers import OTHER_TOKEN, TOKEN, make_tokens


@pytest.fixture
def price_source():
    source = MagicMock()
    source.get_price = AsyncMock(return_value=1.0)
    return source


@pytest.fixture
def monitor():
    return MagicMock()


@pytest.fixture
def engine(balance_manager, executor, store, price_source, notifier, monitor):
    return TradingEngine(
        balance_manager,
        executor,
        store,
        price_source,
        notifier,
        monitor=monitor,
        max_queue_size=5,
    )


def blocking_buy(executor):
    """Hace que executor.buy espere hasta que el test suelte el evento."""
    gate = asyncio.Event()

    async def buy(token, amount):
        await gate.wait()
        return True

    executor.buy.side_effect = buy
    return gate


@pytest.mark.parametrize(
    "token, valid",
    [
        (TOKEN, True),
        (OTHER_TOKEN, True),
        ("A" * 31, False),
        ("A" * 45, False),
        ("0" * 40, False),
        ("", False),
        (None, False),
    ],
)
def test_token_address_validation(token, valid):
    assert is_valid_token_address(token) is valid


# -----------------------------------------------------------------------------
# Ejecución
# -----------------------------------------------------------------------------


def test_successful_trade_registers_position(engine, executor, store, notifier, monitor):
    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is True
    assert result.amount == pytest.approx(0.144)
    assert result.price == 1.0
    executor.buy.assert_awaited_once()
    assert store.get_position(TOKEN).entry_amount == pytest.approx(0.144)
    monitor.ensure_running.assert_called_once()

    token, amount, price, percentage = notifier.notify_token_bought.call_args.args
    assert token == TOKEN
    assert percentage == 8.0
    assert engine.get_status()["is_trading"] is False
    assert engine.trades_executed == 1


def test_trade_without_price_registers_pending_entry(engine, store, price_source):
    price_source.get_price.return_value = None

    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is True
    assert result.price is None
    assert store.get_position(TOKEN).has_entry_price is False


def test_failed_purchase_does_not_register(engine, executor, store):
    executor.buy.return_value = False

    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is False
    assert result.error == "Purchase failed"
    assert len(store) == 0
    assert engine.trades_failed == 1


def test_invalid_token_is_rejected(engine, executor):
    result = asyncio.run(engine.execute_trade("not-a-mint"))

    assert result.success is False
    assert result.error == "Invalid token address"
    executor.buy.assert_not_called()


def test_insufficient_balance_is_rejected(engine, executor, balance_source):
    balance_source.get_wallet_balance.return_value = 0.1

    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is False
    assert result.error.startswith("Insufficient balance")
    executor.buy.assert_not_called()


def test_token_already_held_is_rejected(engine, executor, store):
    store.add_position(TOKEN, 1.0, 0.1)

    decision = asyncio.run(engine.quick_trade_check(TOKEN))

    assert decision.should_trade is False
    assert decision.reason == "Position already open"


def test_unexpected_error_becomes_failed_result(engine, executor, notifier):
    executor.buy.side_effect = RuntimeError("socket closed")

    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is False
    assert result.error == "socket closed"
    notifier.notify_error.assert_called_once()
    assert engine.get_status()["is_trading"] is False


def test_quick_trade_check_has_no_side_effects(engine, executor, store):
    decision = asyncio.run(engine.can_trade(TOKEN))

    assert decision.should_trade is True
    assert decision.buy_amount == pytest.approx(0.144)
    executor.buy.assert_not_called()
    assert len(store) == 0
    assert engine.get_queue_info()["size"] == 0


def test_paused_engine_rejects_signals(engine, executor):
    engine.set_active(False)

    result = asyncio.run(engine.handle_new_token(TOKEN))

    assert result is None
    executor.buy.assert_not_called()


# -----------------------------------------------------------------------------
# Cola
# -----------------------------------------------------------------------------


def test_busy_engine_enqueues_and_drops_newest_when_full(engine, executor):
    tokens = make_tokens(7)

    async def scenario():
        gate = blocking_buy(executor)
        first = asyncio.create_task(engine.execute_trade(tokens[0]))
        await asyncio.sleep(0)
        while executor.buy.await_count == 0:
            await asyncio.sleep(0)

        busy = [await engine.execute_trade(t) for t in tokens[1:]]
        info = engine.get_queue_info()

        gate.set()
        await first
        await engine.wait_idle()
        return busy, info

    busy, info = asyncio.run(scenario())

    assert all(r.error == "Trading in progress" for r in busy)
    assert [r.queued for r in busy] == [True] * 5 + [False]
    assert info["size"] == 5
    assert engine.dropped_signals == 1
    # la cola se drena de a uno, en orden
    bought = [c.args[0] for c in executor.buy.call_args_list]
    assert bought == tokens[:6]
    assert engine.get_queue_info()["size"] == 0


def test_clear_queue(engine, executor):
    tokens = make_tokens(3)

    async def scenario():
        gate = blocking_buy(executor)
        first = asyncio.create_task(engine.execute_trade(tokens[0]))
        while executor.buy.await_count == 0:
            await asyncio.sleep(0)
        await engine.execute_trade(tokens[1])
        await engine.execute_trade(tokens[2])
        cleared = engine.clear_queue()
        gate.set()
        await first
        await engine.wait_idle()
        return cleared

    assert asyncio.run(scenario()) == 2
    assert executor.buy.await_count == 1


# -----------------------------------------------------------------------------
# Emergency stop
# -----------------------------------------------------------------------------


def test_emergency_stop_sells_tracked_and_untracked(engine, executor, store):
    store.add_position(TOKEN, 1.0, 0.1)
    store.add_position(OTHER_TOKEN, 1.0, 0.1)
    untracked = make_tokens(1)[0]
    executor.remote_positions(TOKEN, untracked)

    report = asyncio.run(engine.emergency_stop())

    assert report.total == 3
    assert report.successful == 3
    assert len(store) == 0
    sold = {c.args[0] for c in executor.sell_token.call_args_list}
    assert sold == {TOKEN, OTHER_TOKEN, untracked}
    assert engine.is_active() is False


def test_emergency_stop_collects_failures(engine, executor, store):
    store.add_position(TOKEN, 1.0, 0.1)
    store.add_position(OTHER_TOKEN, 1.0, 0.1)

    async def sell(token, pct, reason):
        if token == TOKEN:
            return SellResult(success=False, error="no route")
        return SellResult(success=True, transaction_id="tx")

    executor.sell_token.side_effect = sell
    executor.list_open_positions.side_effect = RuntimeError("api down")

    report = asyncio.run(engine.emergency_stop())

    assert (report.total, report.successful, report.failed) == (2, 1, 1)
    failed = [d for d in report.details if not d.success]
    assert failed[0].token_address == TOKEN
    assert failed[0].error == "no route"
    assert store.has_position(TOKEN)


def test_emergency_during_buy_liquidates_late_fill(engine, executor, store):
    tokens = make_tokens(2)

    async def scenario():
        gate = blocking_buy(executor)
        first = asyncio.create_task(engine.execute_trade(tokens[0]))
        while executor.buy.await_count == 0:
            await asyncio.sleep(0)
        await engine.execute_trade(tokens[1])

        report = await engine.emergency_stop()
        status = engine.get_status()

        gate.set()
        result = await first
        await engine.wait_idle()
        return report, status, result

    report, status, result = asyncio.run(scenario())

    assert report.total == 0
    assert status["is_trading"] is False
    assert status["queue_size"] == 0
    assert result.success is True
    # la compra que llegó tarde se liquida y la cola no se reanuda
    assert len(store) == 0
    executor.sell_token.assert_awaited_once_with(tokens[0], 100.0, "Emergency Stop")
    assert executor.buy.await_count == 1


def test_resume_after_emergency(engine, executor):
    asyncio.run(engine.emergency_stop())
    engine.set_active(True)

    result = asyncio.run(engine.execute_trade(TOKEN))

    assert result.success is True


# -----------------------------------------------------------------------------
# Estado
# -----------------------------------------------------------------------------


def test_health_check(engine, executor):
    health = asyncio.run(engine.health_check())
    assert health["healthy"] is True

    executor.health_check.return_value = False
    health = asyncio.run(engine.health_check())
    assert health["healthy"] is False
    assert health["details"]["api_ok"] is False


def test_resume_during_pending_buy_keeps_single_flight(engine, executor, store):
    tokens = make_tokens(2)
    concurrent = []
    gate = asyncio.Event()

    async def scenario():
        running = 0

        async def buy(token, amount):
            nonlocal running
            running += 1
            concurrent.append(running)
            if token == tokens[0]:
                await gate.wait()
            running -= 1
            return True

        executor.buy.side_effect = buy
        first = asyncio.create_task(engine.execute_trade(tokens[0]))
        while executor.buy.await_count == 0:
            await asyncio.sleep(0)

        await engine.emergency_stop()
        engine.set_active(True)
        second = await engine.execute_trade(tokens[1])

        gate.set()
        await first
        await engine.wait_idle()
        return second

    second = asyncio.run(scenario())

    assert second.queued is True
    assert max(concurrent) == 1
    assert [c.args[0] for c in executor.buy.call_args_list] == tokens
    assert store.has_position(tokens[1])


def test_token_is_stripped_before_buying(engine, executor, store):
    result = asyncio.run(engine.execute_trade(f"  {TOKEN}\n"))

    assert result.success is True
    assert executor.buy.call_args.args[0] == TOKEN
    assert store.has_position(TOKEN)


def test_wait_idle_waits_for_direct_buy(engine, executor, store):
    async def scenario():
        gate = blocking_buy(executor)
        task = asyncio.create_task(engine.execute_trade(TOKEN))
        while executor.buy.await_count == 0:
            await asyncio.sleep(0)
        waiter = asyncio.create_task(engine.wait_idle())
        await asyncio.sleep(0.01)
        waited = waiter.done()
        gate.set()
        await waiter
        return waited, task.done()

    waited, done = asyncio.run(scenario())

    assert waited is False
    assert done is True
    assert store.has_position(TOKEN)


def test_emergency_stop_forgets_price_state(engine, store, price_source):
    store.add_position(TOKEN, 1.0, 0.1)

    asyncio.run(engine.emergency_stop())

    price_source.forget.assert_called_once_with(TOKEN)
