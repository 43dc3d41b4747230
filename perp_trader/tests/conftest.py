import json
from collections import defaultdict

import httpx
import pytest
import pytest_asyncio

from perp_trader.models.trading_models import BotConfig, UserCredentials
from perp_trader.persistence.db import Database
from perp_trader.providers.exchange_rest import ExchangeClient


class FakeSigner:
    def __init__(self, private_key):
        self.private_key = private_key
        self.nonce = 0

    def build_payload(self, action, testnet):
        self.nonce += 1
        return {"action": action, "nonce": self.nonce, "signature": {"r": "0x0", "s": "0x0", "v": 27}}


class FakeExchange:
    """In-memory stand-in for the /info and /exchange endpoints."""

    def __init__(self):
        self.universe = [
            {"name": "BTC", "szDecimals": 5, "maxLeverage": 50},
            {"name": "ETH", "szDecimals": 4, "maxLeverage": 25},
            {"name": "SOL", "szDecimals": 2, "maxLeverage": 20},
        ]
        self.mids = {"BTC": "60000.0", "ETH": "3000.0", "SOL": "100.0"}
        self.positions = []
        self.account_value = "10000.0"
        self.open_orders = []
        self.candles = defaultdict(list)
        self.requests = []
        self.actions = []
        # action type -> queued responses; the default answers when empty
        self.responses = defaultdict(list)
        self.fail_info = set()

    def set_position(self, coin, szi, entry_px, pnl=0.0, leverage=5):
        self.positions = [p for p in self.positions if p["position"]["coin"] != coin]
        self.positions.append({"type": "oneWay", "position": {
            "coin": coin,
            "szi": str(szi),
            "entryPx": str(entry_px),
            "leverage": {"type": "cross", "value": leverage},
            "unrealizedPnl": str(pnl),
            "positionValue": str(abs(szi) * entry_px + pnl),
            "liquidationPx": None,
        }})

    def candle_series(self, coin, closes, start=1700000000000, step=3600000):
        self.candles[coin] = [
            {"t": start + i * step, "T": start + (i + 1) * step - 1, "s": coin, "i": "1h",
             "o": str(c), "h": str(c * 1.01), "l": str(c * 0.99), "c": str(c), "v": "10", "n": 5}
            for i, c in enumerate(closes)
        ]

    def queue(self, action_type, response):
        self.responses[action_type].append(response)

    def action_types(self):
        return [a["type"] for a in self.actions]

    def orders_sent(self):
        return [o for a in self.actions if a["type"] == "order" for o in a["orders"]]

    def _info(self, body):
        kind = body["type"]
        if kind in self.fail_info:
            return httpx.Response(500, text="boom")
        if kind == "metaAndAssetCtxs":
            return httpx.Response(200, json=[{"universe": self.universe}, [{} for _ in self.universe]])
        if kind == "allMids":
            return httpx.Response(200, json=self.mids)
        if kind == "clearinghouseState":
            return httpx.Response(200, json={
                "marginSummary": {"accountValue": self.account_value, "totalMarginUsed": "0.0"},
                "withdrawable": self.account_value,
                "assetPositions": self.positions,
            })
        if kind in ("frontendOpenOrders", "openOrders"):
            return httpx.Response(200, json=self.open_orders)
        if kind == "candleSnapshot":
            return httpx.Response(200, json=self.candles.get(body["req"]["coin"], []))
        return httpx.Response(400, text=f"unknown info type {kind}")

    def _default_exchange_response(self, action):
        kind = action["type"]
        if kind == "order":
            statuses = [{"resting": {"oid": 1000 + len(self.actions)}} if "trigger" in o["t"]
                        else {"filled": {"oid": 1000 + len(self.actions), "totalSz": o["s"], "avgPx": o["p"]}}
                        for o in action["orders"]]
            return {"status": "ok", "response": {"type": "order", "data": {"statuses": statuses}}}
        if kind == "cancel":
            return {"status": "ok", "response": {"type": "cancel",
                                                 "data": {"statuses": ["success"] * len(action["cancels"])}}}
        return {"status": "ok", "response": {"type": "default"}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        if request.url.path == "/info":
            return self._info(body)
        action = body["action"]
        self.actions.append(action)
        queued = self.responses.get(action["type"])
        if queued:
            answer = queued.pop(0)
            if isinstance(answer, httpx.Response):
                return answer
            return httpx.Response(200, json=answer)
        return httpx.Response(200, json=self._default_exchange_response(action))


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


@pytest.fixture
def fake_exchange():
    return FakeExchange()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def exchange_client(fake_exchange, recording_sleep):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_exchange.handler))
    client = ExchangeClient(http=http, sleep=recording_sleep, signer_factory=FakeSigner, max_retries=3, timeout=5)
    yield client
    await http.aclose()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'trader.db'}")
    await database.connect()
    yield database
    await database.disconnect()
    database.engine.dispose()


@pytest.fixture
def creds():
    return UserCredentials(user_id="alice", wallet_address="0xabc", private_key="0x" + "11" * 32, testnet=False)


@pytest.fixture
def bot_config():
    return BotConfig(
        user_id="alice",
        is_active=True,
        model_name="test-model",
        symbols=["BTC", "ETH", "SOL"],
        max_leverage=10,
        max_position_size=0.5,
        max_daily_loss=5.0,
        min_account_value=100.0,
        starting_capital=10000.0,
        max_total_positions=3,
    )
