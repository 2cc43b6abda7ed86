from unittest.mock import AsyncMock, MagicMock

import pytest

from balance_manager import BalanceManager
from config import BuyConfig, RiskConfig
from notifier import Notifier
from position_manager import PositionStore
from tests.helpers import FakeClock, FakeExecutor


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def risk():
    return RiskConfig()


@pytest.fixture
def store(risk, executor, notifier):
    return PositionStore(risk, executor, notifier, failure_alert_threshold=3)


@pytest.fixture
def balance_source():
    source = MagicMock()
    source.get_wallet_balance = AsyncMock(return_value=2.0)
    return source


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def balance_manager(balance_source, clock):
    return BalanceManager(BuyConfig(), balance_source, clock=clock)
