import asyncio
from unittest.mock import MagicMock

import pytest

from shared.config.schema import ConnectionConfig
from strategies.digit_differ.core.errors import (
    AuthError,
    ConnectionLost,
    DataError,
    RateLimited,
    ReconnectExhausted,
    RequestTimeout,
    VenueUnavailable,
    VenueValidationError,
)
from strategies.digit_differ.gateways.deriv_ws import DerivWebsocketClient, backoff_delay
from strategies.digit_differ.sim.fakes import FakeDerivServer


class _RecordingSleep:
    """记录退避延迟但不真正等待。"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def _flush(n: int = 10):
    for _ in range(n):
        await asyncio.sleep(0)


@pytest.fixture
def server():
    return FakeDerivServer(token="demo-token", seed=1, decimals={"R_50": 4})


@pytest.fixture
def sleep():
    return _RecordingSleep()


def _client(server, sleep, **overrides) -> DerivWebsocketClient:
    cfg = ConnectionConfig(**{"token": "demo-token", "request_timeout_s": 1.0, **overrides})
    return DerivWebsocketClient(cfg, connect_fn=server.connect, sleep_fn=sleep)


def test_backoff_delay_sequence():
    assert [backoff_delay(i, 1.0, 30.0) for i in range(8)] == [1, 2, 4, 8, 16, 30, 30, 30]
    assert backoff_delay(3, 1000, 30000) == 8000


@pytest.mark.asyncio
async def test_connect_authorizes(server, sleep):
    client = _client(server, sleep)
    auth = await client.connect()
    assert auth["loginid"] == "VRTC0000001"
    assert client.is_connected
    assert server.requests[0]["authorize"] == "demo-token"
    assert client.url.endswith("?app_id=1089")
    await client.close()
    assert not client.is_connected


@pytest.mark.asyncio
async def test_req_ids_strictly_increase(server, sleep):
    client = _client(server, sleep)
    await client.connect()
    for _ in range(3):
        await client.request({"ping": 1})
    ids = [r["req_id"] for r in server.requests]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
    await client.close()


@pytest.mark.asyncio
async def test_request_timeout_removes_pending(server, sleep):
    client = _client(server, sleep)
    await client.connect()
    server.silent.add("ping")

    with pytest.raises(RequestTimeout):
        await client.request({"ping": 1}, timeout=0.05)
    assert client.pending_count == 0

    # 迟到的响应不会再被当作关联响应
    late_id = server.requests[-1]["req_id"]
    server.sockets[0].push({"req_id": late_id, "msg_type": "ping", "ping": "pong"})
    await _flush()
    assert client.is_connected
    await client.close()


@pytest.mark.asyncio
async def test_disconnect_rejects_all_pending_and_reconnects(server, sleep):
    client = _client(server, sleep)
    lost = MagicMock()
    reconnected = asyncio.Event()
    client.on_connection_lost = lost
    client.on_reconnected = lambda auth: reconnected.set()
    await client.connect()
    await client.subscribe("tick", "R_50")
    assert client.subscriptions

    server.silent.add("ping")
    tasks = [asyncio.create_task(client.request({"ping": 1})) for _ in range(2)]
    await _flush()
    assert client.pending_count == 2

    server.drop_all()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, ConnectionLost) for r in results)
    assert client.pending_count == 0
    assert lost.call_count == 1

    await asyncio.wait_for(reconnected.wait(), timeout=1.0)
    assert client.is_connected
    assert server.connections == 2
    assert sleep.delays == [1.0]
    # 旧订阅在断线时全部失效
    assert client.subscriptions == {}
    await client.close()


@pytest.mark.asyncio
async def test_connect_retries_with_backoff_then_succeeds(server, sleep):
    server.connect_failures = 2
    client = _client(server, sleep)
    await client.connect()
    assert sleep.delays == [1.0, 2.0]
    assert client.attempt == 0
    await client.close()


@pytest.mark.asyncio
async def test_connect_gives_up_after_max_attempts(server, sleep):
    server.connect_failures = 100
    client = _client(server, sleep, max_reconnect_attempts=6)
    with pytest.raises(ReconnectExhausted):
        await client.connect()
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


@pytest.mark.asyncio
async def test_auth_error_is_fatal_and_not_retried(server, sleep):
    client = _client(server, sleep, token="wrong-token")
    with pytest.raises(AuthError):
        await client.connect()
    assert server.connections == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_missing_token_is_auth_error(server, sleep):
    client = _client(server, sleep, token="")
    with pytest.raises(AuthError):
        await client.connect()


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried_after_delay(server, sleep):
    client = _client(server, sleep, rate_limit_delay_s=60)
    await client.connect()
    server.inject_error("ping", "RateLimit")
    resp = await client.request({"ping": 1})
    assert resp["ping"] == "pong"
    assert sleep.delays == [60.0]
    await client.close()


@pytest.mark.asyncio
async def test_rate_limit_retries_are_bounded(server, sleep):
    client = _client(server, sleep, rate_limit_retries=1)
    await client.connect()
    server.inject_error("ping", "RateLimit")
    server.inject_error("ping", "RateLimit")
    with pytest.raises(RateLimited):
        await client.request({"ping": 1})
    await client.close()


@pytest.mark.asyncio
async def test_error_envelopes_are_classified(server, sleep):
    client = _client(server, sleep)
    await client.connect()
    server.inject_error("buy", "InvalidContractParameters")
    with pytest.raises(VenueValidationError):
        await client.buy(symbol="R_50", amount=1.0, contract_type="DIGITDIFF", barrier=5)
    server.inject_error("tick", "MarketIsClosed")
    with pytest.raises(VenueUnavailable):
        await client.subscribe("tick", "R_50")
    await client.close()


@pytest.mark.asyncio
async def test_ack_goes_to_resolver_and_stream_to_handler(server, sleep):
    client = _client(server, sleep)
    tick_handler = MagicMock()
    client.register_handler("tick", tick_handler)
    await client.connect()

    sub = await client.subscribe("tick", "R_50")
    await _flush()
    assert "tick" in sub.snapshot
    assert tick_handler.call_count == 0

    server.emit_tick("R_50")
    await _flush()
    assert tick_handler.call_count == 1
    assert tick_handler.call_args[0][0]["tick"]["symbol"] == "R_50"
    await client.close()


@pytest.mark.asyncio
async def test_subscription_handler_takes_precedence(server, sleep):
    client = _client(server, sleep)
    type_handler = MagicMock()
    sub_handler = MagicMock()
    client.register_handler("tick", type_handler)
    await client.connect()
    await client.subscribe("tick", "R_50", handler=sub_handler)

    server.emit_tick("R_50")
    await _flush()
    assert sub_handler.call_count == 1
    assert type_handler.call_count == 0
    await client.close()


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped(server, sleep):
    client = _client(server, sleep)

    def _bad_handler(msg):
        raise DataError("bad tick")

    client.register_handler("tick", _bad_handler)
    await client.connect()
    await client.subscribe("tick", "R_50")

    server.sockets[0].push_raw("not json")
    server.emit_tick("R_50")
    await _flush()
    assert client.is_connected
    resp = await client.request({"ping": 1})
    assert resp["ping"] == "pong"
    await client.close()


def test_duplicate_handler_registration_fails(server, sleep):
    client = _client(server, sleep)
    client.register_handler("tick", MagicMock())
    with pytest.raises(ValueError):
        client.register_handler("tick", MagicMock())


@pytest.mark.asyncio
async def test_request_without_connection_fails_fast(server, sleep):
    client = _client(server, sleep)
    with pytest.raises(ConnectionLost):
        await client.request({"ping": 1})


@pytest.mark.asyncio
async def test_close_does_not_reconnect(server, sleep):
    client = _client(server, sleep)
    lost = MagicMock()
    client.on_connection_lost = lost
    await client.connect()
    await client.close()
    await _flush()
    assert server.connections == 1
    assert lost.call_count == 0


@pytest.mark.asyncio
async def test_buy_and_history(server, sleep):
    client = _client(server, sleep)
    await client.connect()
    prices, times = await client.ticks_history("R_50", 20)
    assert len(prices) == 20
    assert times == sorted(times) and len(set(times)) == 20

    # 订阅确认携带的是回填中的最新一个 tick
    sub = await client.subscribe("tick", "R_50")
    assert sub.snapshot["tick"]["epoch"] == times[-1]
    assert sub.snapshot["tick"]["quote"] == prices[-1]

    buy = await client.buy(symbol="R_50", amount=1.0, contract_type="DIGITDIFF", barrier=5)
    assert buy["contract_id"] > 0
    sent = server.requests[-1]
    assert sent["parameters"]["barrier"] == "5"
    assert sent["parameters"]["basis"] == "stake"
    await client.close()


@pytest.mark.asyncio
async def test_history_without_times_returns_empty_epochs(server, sleep, monkeypatch):
    client = _client(server, sleep)
    await client.connect()

    async def _request(payload, timeout=None):
        return {"history": {"prices": [1.0, 2.0], "times": [1, "soon"]}}

    monkeypatch.setattr(client, "request", _request)
    assert await client.ticks_history("R_50", 2) == ([1.0, 2.0], [])
    await client.close()


@pytest.mark.asyncio
async def test_failing_async_callback_is_logged(server, sleep, caplog):
    client = _client(server, sleep)
    reconnected = asyncio.Event()

    async def _lost(err):
        raise RuntimeError("callback boom")

    client.on_connection_lost = _lost
    client.on_reconnected = lambda auth: reconnected.set()
    await client.connect()

    with caplog.at_level("ERROR"):
        server.drop_all()
        await asyncio.wait_for(reconnected.wait(), timeout=1.0)
        await _flush()
    assert "callback boom" in caplog.text
    assert client._callback_tasks == set()
    await client.close()
