import pytest
from fastapi.testclient import TestClient

from perp_trader.app import app
from perp_trader.config import settings
from perp_trader.api.dependencies.services import service_registry
from perp_trader.models.trading_models import Candle, NuclearCloseResult, UserCredentials

HEADERS = {"X-Control-Token": "secret"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "AUTO_START_SCHEDULERS", False)
    monkeypatch.setattr(settings, "MARKET_STREAM_ENABLE", False)
    monkeypatch.setattr(settings, "CONTROL_API_TOKEN", "secret")
    with TestClient(app) as c:
        yield c
    service_registry.clear()


def test_control_requires_token(client):
    assert client.post("/control/start").status_code == 401
    assert client.post("/control/stop", headers={"X-Control-Token": "wrong"}).status_code == 401


def test_control_disabled_without_configured_token(client, monkeypatch):
    monkeypatch.setattr(settings, "CONTROL_API_TOKEN", "")
    assert client.post("/control/start", headers={"X-Control-Token": ""}).status_code == 401


def test_start_and_stop_schedulers(client):
    r = client.post("/control/start", headers=HEADERS)
    assert r.status_code == 200
    assert client.get("/status").json()["trading_scheduler"]["running"] is True
    r = client.post("/control/stop", headers=HEADERS)
    assert r.json()["status"] == "stopped"
    assert client.get("/status").json()["reconcile_scheduler"]["running"] is False


def test_manual_cycle_unknown_user(client):
    assert client.post("/control/cycle/nobody", headers=HEADERS).status_code == 404


def test_manual_reconcile_without_bots(client):
    r = client.post("/control/reconcile", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["users_checked"] == 0


class StubExecutor:
    def __init__(self):
        self.calls = []

    async def nuclear_close_position(self, account, symbol, testnet=False):
        self.calls.append((account.user_id, symbol))
        return NuclearCloseResult(symbol=symbol, outcome="no_position", cancelled_count=1)


def test_nuclear_close_route(client):
    db = service_registry.get("database")
    client.portal.call(db.upsert_credentials, UserCredentials(user_id="alice", wallet_address="0xabc",
                                                              private_key="0x" + "11" * 32))
    executor = StubExecutor()
    service_registry.register("executor", executor)
    r = client.post("/control/nuclear-close", json={"user_id": "alice", "symbol": "SOL"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"symbol": "SOL", "outcome": "no_position", "cancelled_count": 1, "tx_ref": None}
    assert executor.calls == [("alice", "SOL")]
    lock = service_registry.get("trading_lock")
    assert client.portal.call(lock.current, "alice") is None


def test_nuclear_close_refused_while_cycle_holds_lock(client):
    db = service_registry.get("database")
    client.portal.call(db.upsert_credentials, UserCredentials(user_id="alice", wallet_address="0xabc",
                                                              private_key="0x" + "11" * 32))
    executor = StubExecutor()
    service_registry.register("executor", executor)
    client.portal.call(service_registry.get("trading_lock").acquire, "alice")

    r = client.post("/control/nuclear-close", json={"user_id": "alice", "symbol": "SOL"}, headers=HEADERS)

    assert r.status_code == 409
    assert executor.calls == []


def test_nuclear_close_unknown_user(client):
    r = client.post("/control/nuclear-close", json={"user_id": "ghost", "symbol": "SOL"}, headers=HEADERS)
    assert r.status_code == 404


class StubStream:
    def __init__(self):
        self.latest = {"BTC": Candle(t=60000, open=1, high=2, low=0.5, close=1.5, volume=3, symbol="BTC", interval="1m")}

    async def stop(self):
        pass


def test_latest_streamed_candle(client):
    service_registry.register("market_stream", StubStream())
    r = client.get("/market/candles/BTC")
    assert r.status_code == 200
    assert r.json()["close"] == 1.5
    assert client.get("/market/candles/ETH").status_code == 404
