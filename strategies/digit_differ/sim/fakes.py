from __future__ import annotations

import asyncio
import json
import random
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.models.models import Subscription
from strategies.digit_differ.core.errors import ConnectionLost, DataError, VenueValidationError

_CLOSE = object()


class FakeClock:
    def __init__(self, start_ts: Optional[float] = None):
        self._ts = float(time.time() if start_ts is None else start_ts)

    def now(self) -> float:
        return self._ts

    def advance(self, seconds: float) -> float:
        self._ts += float(seconds)
        return self._ts


class FakeWebsocket:
    """
    Minimal websocket replacement: send() feeds a responder, inbound frames come from a queue.
    Iteration ends when the socket is dropped (server-side close).
    """

    def __init__(self, responder: Optional[Callable[["FakeWebsocket", Dict[str, Any]], Optional[List[Dict[str, Any]]]]] = None):
        self.responder = responder
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    async def send(self, data: str):
        if self.closed:
            raise ConnectionResetError("fake websocket closed")
        msg = json.loads(data)
        self.sent.append(msg)
        if self.responder is not None:
            for reply in self.responder(self, msg) or []:
                self.push(reply)

    def push(self, msg: Dict[str, Any]):
        if not self.closed:
            self._incoming.put_nowait(json.dumps(msg))

    def push_raw(self, raw: str):
        if not self.closed:
            self._incoming.put_nowait(raw)

    def drop(self):
        if self.closed:
            return
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    async def close(self):
        self.drop()


class FakeDerivServer:
    """
    In-process Deriv venue (no network access).

    - authorize / ping / ticks_history / ticks / balance / buy / proposal_open_contract / forget
    - random-walk prices; open DIGITDIFF contracts settle on the next tick of their symbol
    - failure injection: connect failures, error envelopes, unanswered requests, server-side drops
    """

    def __init__(
        self,
        *,
        token: Optional[str] = "demo-token",
        balance: float = 1000.0,
        currency: str = "USD",
        decimals: Optional[Dict[str, int]] = None,
        payout_rate: float = 0.09,
        seed: Optional[int] = None,
        clock: Optional[FakeClock] = None,
    ):
        self.token = token
        self.balance = float(balance)
        self.currency = currency
        self.decimals = dict(decimals or {})
        self.payout_rate = float(payout_rate)
        self.rng = random.Random(seed)
        self.clock = clock or FakeClock()

        self.sockets: List[FakeWebsocket] = []
        self.connect_failures = 0
        self.connections = 0
        self.requests: List[Dict[str, Any]] = []
        self.errors: Dict[str, List[Dict[str, str]]] = {}
        self.silent: set[str] = set()

        self.prices: Dict[str, float] = {}
        self.contracts: Dict[int, Dict[str, Any]] = {}
        self._subs: Dict[str, Tuple[FakeWebsocket, str, Any]] = {}
        self._next_contract = 10000
        self._next_sub = 0
        self.running = False

    # ------------------------------------------------------------------
    # 连接
    # ------------------------------------------------------------------

    async def connect(self, url: str) -> FakeWebsocket:
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionRefusedError(f"fake connect refused: {url}")
        ws = FakeWebsocket(self._respond)
        self.sockets = [s for s in self.sockets if not s.closed]
        self.sockets.append(ws)
        self.connections += 1
        return ws

    def drop_all(self):
        """服务端主动断开全部连接。"""
        for ws in list(self.sockets):
            ws.drop()
        self.sockets = []
        self._subs.clear()

    def inject_error(self, kind: str, code: str, message: str = "injected"):
        self.errors.setdefault(kind, []).append({"code": code, "message": message})

    # ------------------------------------------------------------------
    # 请求处理
    # ------------------------------------------------------------------

    def _decimals(self, symbol: str) -> int:
        return int(self.decimals.get(symbol, 2))

    def _next_price(self, symbol: str) -> float:
        price = self.prices.get(symbol, 1000.0)
        price = max(1.0, price + self.rng.uniform(-1.0, 1.0))
        self.prices[symbol] = price
        return round(price, self._decimals(symbol))

    def _sub_id(self) -> str:
        self._next_sub += 1
        return f"sub-{self._next_sub:04d}"

    def _respond(self, ws: FakeWebsocket, msg: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.requests.append(msg)
        kind = self._kind(msg)
        base = {"req_id": msg.get("req_id"), "echo_req": msg, "msg_type": kind}
        if kind in self.silent:
            return []
        if self.errors.get(kind):
            return [{**base, "error": self.errors[kind].pop(0)}]

        handler = getattr(self, f"_on_{kind}", None)
        if handler is None:
            return [{**base, "error": {"code": "UnrecognisedRequest", "message": f"Unknown request {kind}"}}]
        return handler(ws, msg, base)

    @staticmethod
    def _kind(msg: Dict[str, Any]) -> str:
        for key in ("authorize", "ping", "ticks_history", "ticks", "balance", "buy", "proposal_open_contract", "forget"):
            if key in msg:
                return "tick" if key == "ticks" else ("history" if key == "ticks_history" else key)
        return next((k for k in msg if k != "req_id"), "unknown")

    def _on_authorize(self, ws, msg, base):
        if self.token is not None and msg["authorize"] != self.token:
            return [{**base, "error": {"code": "InvalidToken", "message": "The token is invalid."}}]
        return [{**base, "authorize": {"loginid": "VRTC0000001", "balance": self.balance, "currency": self.currency}}]

    def _on_ping(self, ws, msg, base):
        return [{**base, "ping": "pong"}]

    def _on_history(self, ws, msg, base):
        symbol = msg["ticks_history"]
        count = int(msg.get("count", 100))
        prices = [self._next_price(symbol) for _ in range(count)]
        now = int(self.clock.now())
        return [{**base, "history": {"prices": prices, "times": list(range(now - count + 1, now + 1))}}]

    def _on_tick(self, ws, msg, base):
        symbol = msg["ticks"]
        sub_id = self._sub_id()
        self._subs[sub_id] = (ws, "tick", symbol)
        # 与 Deriv 一致：订阅确认携带最新一个 tick（即历史回填的最后一条）
        if symbol in self.prices:
            quote = round(self.prices[symbol], self._decimals(symbol))
        else:
            quote = self._next_price(symbol)
        tick = self._tick_body(symbol, quote, sub_id)
        return [{**base, "tick": tick, "subscription": {"id": sub_id}}]

    def _on_balance(self, ws, msg, base):
        sub_id = self._sub_id()
        self._subs[sub_id] = (ws, "balance", None)
        return [{**base, "balance": {"balance": self.balance, "currency": self.currency}, "subscription": {"id": sub_id}}]

    def _on_buy(self, ws, msg, base):
        params = msg.get("parameters") or {}
        stake = float(params.get("amount", msg.get("price", 0)))
        if stake <= 0 or stake > self.balance:
            return [{**base, "error": {"code": "InsufficientBalance", "message": "Insufficient balance."}}]
        self._next_contract += 1
        cid = self._next_contract
        self.balance -= stake
        self.contracts[cid] = {
            "contract_id": cid,
            "underlying": params.get("symbol"),
            "contract_type": params.get("contract_type"),
            "barrier": params.get("barrier"),
            "buy_price": stake,
            "is_sold": 0,
            "status": "open",
            "profit": 0.0,
        }
        return [{**base, "buy": {
            "contract_id": cid,
            "buy_price": stake,
            "balance_after": round(self.balance, 2),
            "longcode": f"Win payout if the last digit of {params.get('symbol')} is not {params.get('barrier')}.",
        }}]

    def _on_proposal_open_contract(self, ws, msg, base):
        cid = int(msg["contract_id"])
        contract = self.contracts.get(cid)
        if contract is None:
            return [{**base, "error": {"code": "InvalidContractId", "message": "Contract not found."}}]
        sub_id = self._sub_id()
        self._subs[sub_id] = (ws, "contract", cid)
        return [{**base, "proposal_open_contract": dict(contract), "subscription": {"id": sub_id}}]

    def _on_forget(self, ws, msg, base):
        removed = self._subs.pop(msg["forget"], None)
        return [{**base, "forget": 1 if removed else 0}]

    # ------------------------------------------------------------------
    # 推送
    # ------------------------------------------------------------------

    def _tick_body(self, symbol: str, quote: float, sub_id: str) -> Dict[str, Any]:
        return {"symbol": symbol, "quote": quote, "epoch": int(self.clock.now()), "id": sub_id}

    def emit_tick(self, symbol: str, quote: Optional[float] = None) -> float:
        """推送一个 tick，并结算该品种的未平仓合约。"""
        self.clock.advance(1.0)
        quote = self._next_price(symbol) if quote is None else float(quote)
        self.prices[symbol] = quote
        for sub_id, (ws, kind, target) in list(self._subs.items()):
            if kind == "tick" and target == symbol:
                ws.push({"msg_type": "tick", "tick": self._tick_body(symbol, quote, sub_id), "subscription": {"id": sub_id}})
        self._settle_open(symbol, quote)
        return quote

    def _settle_open(self, symbol: str, quote: float):
        text = f"{quote:.{self._decimals(symbol)}f}"
        digit = int(text[-1])
        for cid, contract in self.contracts.items():
            if contract["is_sold"] or contract["underlying"] != symbol:
                continue
            won = str(digit) != str(contract["barrier"])
            stake = float(contract["buy_price"])
            profit = round(stake * self.payout_rate, 2) if won else -stake
            contract.update({
                "is_sold": 1,
                "status": "won" if won else "lost",
                "profit": profit,
                "exit_tick": quote,
                "exit_tick_display_value": text,
            })
            if won:
                self.balance += stake + profit
            self.push_contract(cid)
            self.push_balance()

    def push_contract(self, contract_id: int):
        contract = self.contracts[contract_id]
        for sub_id, (ws, kind, target) in list(self._subs.items()):
            if kind == "contract" and target == contract_id:
                ws.push({"msg_type": "proposal_open_contract", "proposal_open_contract": dict(contract), "subscription": {"id": sub_id}})

    def push_balance(self):
        for sub_id, (ws, kind, _) in list(self._subs.items()):
            if kind == "balance":
                ws.push({"msg_type": "balance", "balance": {"balance": round(self.balance, 2), "currency": self.currency}, "subscription": {"id": sub_id}})

    def subscribed_symbols(self) -> List[str]:
        return sorted({target for ws, kind, target in self._subs.values() if kind == "tick"})

    async def run(self, interval_s: float = 1.0, max_ticks: Optional[int] = None):
        """按固定间隔为已订阅品种推送 tick（dry-run 驱动）。"""
        self.running = True
        emitted = 0
        while self.running and (max_ticks is None or emitted < max_ticks):
            await asyncio.sleep(interval_s)
            for symbol in self.subscribed_symbols():
                self.emit_tick(symbol)
            emitted += 1
        self.running = False


class FakeDerivClient:
    """
    ProtocolClient replacement for engine tests: scripted responses, pushes go straight to the
    registered handlers (same contract as the real dispatcher).
    """

    def __init__(self, *, balance: float = 1000.0, currency: str = "USD", history: Optional[Dict[str, List[Any]]] = None):
        self.balance = float(balance)
        self.currency = currency
        self.history: Dict[str, List[Any]] = dict(history or {})
        self.is_connected = False
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.on_connection_lost = None
        self.on_reconnected = None
        self.on_fatal = None

        self.buy_errors: List[Exception] = []
        self.subscribe_errors: Dict[str, List[Exception]] = {}
        self.contract_snapshots: Dict[int, Dict[str, Any]] = {}
        self.on_buy: Optional[Callable[[Dict[str, Any]], None]] = None

        self.bought: List[Dict[str, Any]] = []
        self.subscribed: List[Tuple[str, Any]] = []
        self.forgotten: List[str] = []
        self.dropped: List[str] = []
        self.epoch = 0
        self.balance_subscribed = False
        self._next_contract = 5000
        self._next_sub = 0

    def register_handler(self, msg_type: str, handler):
        if msg_type in self.handlers:
            raise ValueError(f"Handler already registered for msg_type '{msg_type}'")
        self.handlers[msg_type] = handler

    def _auth(self) -> Dict[str, Any]:
        return {"loginid": "VRTC0000001", "balance": self.balance, "currency": self.currency}

    async def connect(self) -> Dict[str, Any]:
        self.is_connected = True
        return self._auth()

    async def close(self):
        self.is_connected = False

    async def ticks_history(self, symbol: str, count: int) -> Tuple[List[Any], List[int]]:
        self._ensure_connected()
        prices = list(self.history.get(symbol, []))[-count:]
        times = list(range(self.epoch - len(prices) + 1, self.epoch + 1))
        return prices, times

    async def subscribe(self, kind: str, target: Any = None, handler=None) -> Subscription:
        self._ensure_connected()
        errors = self.subscribe_errors.get(kind)
        if errors:
            raise errors.pop(0)
        self.subscribed.append((kind, target))
        self._next_sub += 1
        sub_id = f"{kind}-{self._next_sub}"
        if kind == "contract":
            snapshot = {"proposal_open_contract": dict(self.contract_snapshots.get(int(target), {"contract_id": int(target), "is_sold": 0}))}
        elif kind == "balance":
            self.balance_subscribed = True
            snapshot = {"balance": {"balance": self.balance, "currency": self.currency}}
        elif kind == "tick" and self.history.get(target):
            snapshot = {"tick": {"symbol": target, "quote": self.history[target][-1], "epoch": self.epoch}}
        else:
            snapshot = {}
        return Subscription(id=sub_id, kind=kind, target=str(target), snapshot=snapshot)

    async def unsubscribe(self, sub_id: str) -> None:
        self.forgotten.append(sub_id)

    async def buy(self, **params) -> Dict[str, Any]:
        self._ensure_connected()
        if self.on_buy is not None:
            self.on_buy(params)
        if self.buy_errors:
            raise self.buy_errors.pop(0)
        amount = float(params["amount"])
        if amount <= 0:
            raise VenueValidationError("InvalidAmount", "amount must be positive")
        self._next_contract += 1
        self.balance -= amount
        self.bought.append({**params, "contract_id": self._next_contract})
        return {"contract_id": self._next_contract, "buy_price": amount, "balance_after": self.balance}

    def _ensure_connected(self):
        if not self.is_connected:
            raise ConnectionLost("Not connected")

    # ---- venue pushes -------------------------------------------------

    def push(self, msg: Dict[str, Any]):
        # 与真实分发器一致：格式错误的推送被丢弃而不是抛出
        try:
            self.handlers[msg["msg_type"]](msg)
        except DataError as e:
            self.dropped.append(str(e))

    def push_tick(self, symbol: str, quote: Any, epoch: Optional[int] = None):
        if epoch is None:
            epoch = self.epoch + 1
        self.epoch = max(self.epoch, epoch)
        self.push({"msg_type": "tick", "tick": {"symbol": symbol, "quote": quote, "epoch": epoch}})

    def push_settlement(self, contract_id: int, won: bool, *, stake: float = 1.0, payout_rate: float = 0.09):
        profit = round(stake * payout_rate, 2) if won else -stake
        if won:
            self.balance += stake + profit
        self.push({
            "msg_type": "proposal_open_contract",
            "proposal_open_contract": {
                "contract_id": contract_id,
                "is_sold": 1,
                "status": "won" if won else "lost",
                "profit": profit,
                "buy_price": stake,
            },
        })
        self.push_balance()

    def push_balance(self):
        if self.balance_subscribed:
            self.push({"msg_type": "balance", "balance": {"balance": round(self.balance, 2), "currency": self.currency}})

    def drop_connection(self):
        self.is_connected = False
        self.balance_subscribed = False
        if self.on_connection_lost is not None:
            self.on_connection_lost(ConnectionLost("Connection closed"))

    def restore_connection(self):
        self.is_connected = True
        if self.on_reconnected is not None:
            self.on_reconnected(self._auth())
