import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import NetworkError

from notifier import LoggingNotifier, Notifier, TelegramNotifier, short_token
from tests.helpers import TOKEN


def test_short_token():
    assert short_token(TOKEN) == "So111111...1112"
    assert short_token("short") == "short"


def test_logging_notifier_logs(caplog):
    with caplog.at_level(logging.INFO, logger="notifier"):
        LoggingNotifier().notify_error("price feed <down>")

    assert "SNIPER ERROR" in caplog.text
    assert "price feed &lt;down&gt;" in caplog.text


def test_token_sold_message():
    notifier = LoggingNotifier()
    notifier._deliver = MagicMock()

    notifier.notify_token_sold(TOKEN, "Trailing Stop Loss", 42.5, 0.0425, 1.425)

    text = notifier._deliver.call_args.args[0]
    assert text.startswith("💚")
    assert "Reason: Trailing Stop Loss" in text
    assert "P&L: 42.50% (0.0425 SOL)" in text


def test_token_bought_message_without_percentage():
    notifier = LoggingNotifier()
    notifier._deliver = MagicMock()

    notifier.notify_token_bought(TOKEN, 0.1, 0.0, None)

    text = notifier._deliver.call_args.args[0]
    assert "(N/A% of balance)" in text
    assert f"https://solscan.io/token/{TOKEN}" in text


def test_telegram_notifier_sends_to_every_chat():
    bot = MagicMock()
    bot.send_message = AsyncMock()
    notifier = TelegramNotifier(bot, [1, 2])

    async def scenario():
        notifier.notify_text("hola")
        await notifier.drain()

    asyncio.run(scenario())

    assert bot.send_message.await_count == 2
    kwargs = bot.send_message.call_args.kwargs
    assert kwargs["parse_mode"] == "HTML"
    assert kwargs["text"] == "hola"


def test_telegram_delivery_errors_are_swallowed():
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=NetworkError("timeout"))
    notifier = TelegramNotifier(bot, [1])

    async def scenario():
        notifier.notify_error("boom")
        await notifier.drain()

    asyncio.run(scenario())

    bot.send_message.assert_awaited_once()


def test_telegram_without_loop_drops_message():
    bot = MagicMock()
    bot.send_message = AsyncMock()

    TelegramNotifier(bot, [1]).notify_text("fuera del loop")

    bot.send_message.assert_not_called()


def test_base_notifier_is_abstract():
    with pytest.raises(TypeError):
        Notifier()
