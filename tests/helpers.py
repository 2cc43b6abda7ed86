from unittest.mock import AsyncMock

from models import SellResult, WalletPosition

TOKEN = "So11111111111111111111111111111111111111112"
OTHER_TOKEN = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"


def make_tokens(n):
    """Direcciones base58 válidas y distintas (44 caracteres)."""
    alphabet = "BCDEFGHJKLMNPQRSTUVWXYZ"
    return ["A" * 43 + alphabet[i] for i in range(n)]


class FakeExecutor:
    def __init__(self):
        self.buy = AsyncMock(return_value=True)
        self.sell_token = AsyncMock(return_value=SellResult(success=True, transaction_id="tx"))
        self.list_open_positions = AsyncMock(return_value=[])
        self.health_check = AsyncMock(return_value=True)
        self.get_wallet_balance = AsyncMock(return_value=2.0)

    def remote_positions(self, *tokens):
        self.list_open_positions.return_value = [
            WalletPosition(token_address=t, position_id=i + 1) for i, t in enumerate(tokens)
        ]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


