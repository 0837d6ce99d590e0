import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.config.schema import ConnectionConfig
from shared.models.models import Subscription
from strategies.digit_differ.core.errors import (
    AuthError,
    ConnectionLost,
    DataError,
    FATAL_ERRORS,
    RateLimited,
    ReconnectExhausted,
    RequestTimeout,
    VenueConnectionError,
    VenueError,
    VenueValidationError,
    classify_error,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]

# 连接/鉴权阶段可以退避重试的错误；AuthError 不在其中
_TRANSIENT_CONNECT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    WebSocketException,
    VenueConnectionError,
    RequestTimeout,
    VenueError,
)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """delay = min(base * 2^attempt, cap)"""
    return min(base * (2 ** attempt), cap)


@dataclass
class PendingRequest:
    req_id: int
    created_at: float
    future: asyncio.Future
    kind: str


class DerivWebsocketClient:
    """
    Deriv WebSocket 客户端 (ProtocolClient)

    功能:
    1. req_id 关联的请求/响应 (超时 / 断线统一失败)
    2. 订阅流按 subscription id / msg_type 静态分发
    3. 自动重连 (指数退避) 与心跳保活
    """

    def __init__(
        self,
        cfg: ConnectionConfig,
        *,
        connect_fn: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self._connect_fn = connect_fn or websockets.connect
        self._sleep = sleep_fn

        self.ws = None
        self.running = False
        self._closing = False
        self._establishing = False

        # req_id 在客户端生命周期内严格递增，重连也不归零
        self._req_id = 0
        self._pending: Dict[int, PendingRequest] = {}

        self._msg_handlers: Dict[str, Handler] = {}
        self._sub_handlers: Dict[str, Handler] = {}
        self.subscriptions: Dict[str, Subscription] = {}

        self.attempt = 0
        self.authorize_response: Optional[Dict[str, Any]] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._callback_tasks: set[asyncio.Task] = set()

        # 回调函数
        self.on_connection_lost: Optional[Callable[[Exception], Any]] = None
        self.on_reconnected: Optional[Callable[[Dict[str, Any]], Any]] = None
        self.on_fatal: Optional[Callable[[Exception], Any]] = None

    @property
    def url(self) -> str:
        return f"{self.cfg.ws_url}?app_id={self.cfg.app_id}"

    @property
    def is_connected(self) -> bool:
        return self.ws is not None and self.running

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register_handler(self, msg_type: str, handler: Handler) -> None:
        """注册 msg_type 处理器 (启动时一次性注册，不允许覆盖)。"""
        if msg_type in self._msg_handlers:
            raise ValueError(f"Handler already registered for msg_type '{msg_type}'")
        self._msg_handlers[msg_type] = handler

    # ------------------------------------------------------------------
    # 连接生命周期
    # ------------------------------------------------------------------

    async def connect(self) -> Dict[str, Any]:
        """建立连接并完成 authorize；返回 authorize 响应体。"""
        self._closing = False
        return await self._establish(delay_first=False)

    async def _establish(self, *, delay_first: bool) -> Dict[str, Any]:
        self._establishing = True
        try:
            tried = False
            last_error: Optional[BaseException] = None
            while True:
                if self._closing:
                    raise ConnectionLost("Client closed")
                if delay_first or tried:
                    if self.attempt >= self.cfg.max_reconnect_attempts:
                        raise ReconnectExhausted(
                            f"Gave up after {self.attempt} reconnect attempts (last error: {last_error})"
                        ) from last_error
                    delay = backoff_delay(self.attempt, self.cfg.reconnect_base_s, self.cfg.reconnect_cap_s)
                    self.attempt += 1
                    logger.info(
                        f"🔄 Reconnecting in {delay:.1f}s "
                        f"(attempt {self.attempt}/{self.cfg.max_reconnect_attempts})"
                    )
                    await self._sleep(delay)
                tried = True
                try:
                    return await self._open_and_authorize()
                except AuthError:
                    self._closing = True
                    raise
                except _TRANSIENT_CONNECT_ERRORS as e:
                    last_error = e
                    logger.warning(f"⚠️ Connection failed: {e}")
        finally:
            self._establishing = False

    async def _open_and_authorize(self) -> Dict[str, Any]:
        logger.info(f"🔗 Connecting to {self.cfg.ws_url} (app_id={self.cfg.app_id})...")
        ws = await self._connect_fn(self.url)
        self.ws = ws
        self._reader_task = asyncio.create_task(self._message_loop(ws))
        try:
            auth = await self.authorize()
        except BaseException:
            await self._drop(ws)
            raise
        self.authorize_response = auth
        self.attempt = 0
        self.running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        logger.info(f"✅ Authorized as {auth.get('loginid', '?')} (balance {auth.get('balance')} {auth.get('currency', '')})")
        return auth

    async def _drop(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"close() on dropped socket failed: {e}")
        self._handle_close(ws)

    async def close(self):
        """主动关闭：不再重连，挂起请求以 ConnectionLost 失败。"""
        self._closing = True
        self.running = False
        for task in (self._reconnect_task, self._heartbeat_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        ws = self.ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"close() failed: {e}")
            self._handle_close(ws)
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        logger.info("🛑 Deriv WebSocket closed")

    async def _message_loop(self, ws):
        try:
            async for raw in ws:
                self._dispatch_raw(raw)
        except ConnectionClosed as e:
            logger.warning(f"⚠️ WebSocket closed: {e}")
        finally:
            self._handle_close(ws)

    def _handle_close(self, ws) -> None:
        """每个 socket 只处理一次：拒绝全部挂起请求、清空订阅、安排重连。"""
        if ws is not self.ws:
            return
        was_live = self.running
        self.ws = None
        self.running = False
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()

        err = ConnectionLost("Connection closed")
        pending = list(self._pending.values())
        self._pending.clear()
        for p in pending:
            if not p.future.done():
                p.future.set_exception(err)
        self.subscriptions.clear()
        self._sub_handlers.clear()

        if self._closing or not was_live:
            return
        logger.warning(f"🔌 Connection lost ({len(pending)} pending requests rejected)")
        self._emit(self.on_connection_lost, err)
        if not self._establishing:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        try:
            auth = await self._establish(delay_first=True)
        except FATAL_ERRORS as e:
            logger.error(f"🚨 Fatal connection error: {e}")
            self._emit(self.on_fatal, e)
            return
        except ConnectionLost:
            return
        logger.info("✅ Reconnected")
        self._emit(self.on_reconnected, auth)

    def _emit(self, callback: Optional[Callable[[Any], Any]], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._on_callback_done)
        except Exception:
            logger.exception("Connection callback failed")

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ Connection callback failed: {exc!r}")

    async def _heartbeat_loop(self, ws):
        while self.ws is ws and not self._closing:
            await asyncio.sleep(self.cfg.heartbeat_interval_s)
            if self.ws is not ws:
                break
            try:
                await self.request({"ping": 1}, timeout=self.cfg.request_timeout_s)
            except RequestTimeout:
                # 心跳超时不致命，以底层 close 事件为准
                logger.warning("💓 Heartbeat timed out")
            except ConnectionLost:
                break
            except VenueError as e:
                logger.warning(f"💓 Heartbeat error: {e}")

    # ------------------------------------------------------------------
    # 分发
    # ------------------------------------------------------------------

    def _dispatch_raw(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Dropping non-JSON message: {str(raw)[:120]}")
            return
        if not isinstance(msg, dict):
            logger.warning(f"⚠️ Dropping unexpected message: {str(raw)[:120]}")
            return
        self.dispatch(msg)

    def dispatch(self, msg: Dict[str, Any]) -> None:
        """关联响应 -> resolver；否则按 subscription id / msg_type 交给 handler。二者互斥。"""
        req_id = msg.get("req_id")
        pending = self._pending.pop(req_id, None) if req_id is not None else None
        if pending is not None:
            if not pending.future.done():
                if "error" in msg:
                    pending.future.set_exception(classify_error(msg["error"]))
                else:
                    pending.future.set_result(msg)
            return

        msg_type = msg.get("msg_type")
        if "error" in msg:
            logger.warning(f"⚠️ Uncorrelated error ({msg_type}): {msg['error']}")
            return

        handler = None
        sub_id = (msg.get("subscription") or {}).get("id")
        if sub_id:
            handler = self._sub_handlers.get(sub_id)
        if handler is None and msg_type:
            handler = self._msg_handlers.get(msg_type)
        if handler is None:
            logger.debug(f"No handler for {msg_type}")
            return
        try:
            handler(msg)
        except DataError as e:
            logger.warning(f"⚠️ Dropping malformed {msg_type}: {e}")
        except Exception:
            logger.exception(f"Handler for {msg_type} failed")

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    async def request(self, payload: Dict[str, Any], *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """发送请求并等待关联响应；RateLimited 在固定延迟后重试同一请求。"""
        retries = 0
        while True:
            try:
                return await self._request_once(payload, timeout)
            except RateLimited:
                if retries >= self.cfg.rate_limit_retries:
                    raise
                retries += 1
                logger.warning(
                    f"⏳ Rate limited, retrying in {self.cfg.rate_limit_delay_s:.0f}s "
                    f"({retries}/{self.cfg.rate_limit_retries})"
                )
                await self._sleep(self.cfg.rate_limit_delay_s)

    async def _request_once(self, payload: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        ws = self.ws
        if ws is None:
            raise ConnectionLost("Not connected")
        timeout = self.cfg.request_timeout_s if timeout is None else timeout

        self._req_id += 1
        req_id = self._req_id
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(req_id, time.time(), future, next(iter(payload), "?"))
        try:
            try:
                await ws.send(json.dumps({**payload, "req_id": req_id}))
            except (ConnectionClosed, OSError) as e:
                raise ConnectionLost(f"Send failed: {e}") from e
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as e:
                raise RequestTimeout(req_id, timeout) from e
        finally:
            self._pending.pop(req_id, None)

    async def authorize(self) -> Dict[str, Any]:
        if not self.cfg.token:
            raise AuthError("No API token configured", code="AuthorizationRequired")
        resp = await self.request({"authorize": self.cfg.token})
        return resp.get("authorize") or {}

    async def subscribe(self, kind: str, target: Any = None, handler: Optional[Handler] = None) -> Subscription:
        """订阅 tick / contract / balance；确认消息作为 snapshot 返回。"""
        if kind == "tick":
            payload = {"ticks": target, "subscribe": 1}
        elif kind == "contract":
            payload = {"proposal_open_contract": 1, "contract_id": int(target), "subscribe": 1}
        elif kind == "balance":
            payload = {"balance": 1, "subscribe": 1}
        else:
            raise ValueError(f"Unknown subscription kind: {kind}")

        resp = await self.request(payload)
        sub_id = (resp.get("subscription") or {}).get("id")
        if not sub_id:
            raise VenueValidationError("NoSubscription", f"{kind} {target} acknowledged without subscription id")
        sub = Subscription(id=sub_id, kind=kind, target=str(target if target is not None else ""), snapshot=resp)
        self.subscriptions[sub_id] = sub
        if handler is not None:
            self._sub_handlers[sub_id] = handler
        logger.info(f"📡 Subscribed {kind} {target or ''} ({sub_id})")
        return sub

    async def unsubscribe(self, sub_id: str) -> None:
        self.subscriptions.pop(sub_id, None)
        self._sub_handlers.pop(sub_id, None)
        if self.ws is None:
            return
        try:
            await self.request({"forget": sub_id})
        except (ConnectionLost, RequestTimeout, VenueError) as e:
            logger.debug(f"forget {sub_id} failed: {e}")

    async def ticks_history(self, symbol: str, count: int) -> Tuple[List[Any], List[int]]:
        """返回 (prices, times)；times 缺失时为空列表。"""
        resp = await self.request({
            "ticks_history": symbol,
            "count": int(count),
            "end": "latest",
            "style": "ticks",
        })
        history = resp.get("history") or {}
        prices = history.get("prices")
        if not isinstance(prices, list):
            raise DataError(f"ticks_history for {symbol} without prices")
        times = history.get("times")
        if not isinstance(times, list) or len(times) != len(prices):
            return prices, []
        try:
            return prices, [int(t) for t in times]
        except (TypeError, ValueError):
            logger.debug(f"ticks_history for {symbol} with invalid times, ignoring them")
            return prices, []

    async def buy(
        self,
        *,
        symbol: str,
        amount: float,
        contract_type: str,
        barrier: Optional[int],
        currency: str = "USD",
        duration: int = 1,
        duration_unit: str = "t",
    ) -> Dict[str, Any]:
        parameters: Dict[str, Any] = {
            "amount": amount,
            "basis": "stake",
            "contract_type": contract_type,
            "currency": currency,
            "duration": duration,
            "duration_unit": duration_unit,
            "symbol": symbol,
        }
        if barrier is not None:
            parameters["barrier"] = str(barrier)
        resp = await self.request({"buy": 1, "price": amount, "parameters": parameters}, timeout=self.cfg.buy_timeout_s)
        buy = resp.get("buy")
        if not isinstance(buy, dict) or "contract_id" not in buy:
            raise VenueValidationError("InvalidBuyResponse", f"buy response without contract_id: {resp}")
        return buy
