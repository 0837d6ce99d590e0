import asyncio
import logging
import random
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shared.config.schema import BotConfig
from shared.models.models import IN_FLIGHT_STATUSES, Signal, Trade, TradeStatus
from shared.state.sqlite_store import SqliteStateStore
from strategies.digit_differ.core.analyzers.base import TickAnalyzer
from strategies.digit_differ.core.analyzers.registry import build_analyzer
from strategies.digit_differ.core.errors import (
    ConnectionLost,
    DataError,
    RequestTimeout,
    VenueError,
    VenueUnavailable,
)
from strategies.digit_differ.core.events import (
    BalanceEvent,
    ConnectionLostEvent,
    ContractUpdateEvent,
    CooldownExpired,
    FatalEvent,
    ReconfirmEvent,
    ReconnectedEvent,
    ResubscribeEvent,
    StopEvent,
    TickEvent,
)
from strategies.digit_differ.core.history import DigitHistory, last_digit, parse_tick
from strategies.digit_differ.core.notifier import BaseNotifier, build_notifier
from strategies.digit_differ.core.risk_manager import HARD_STOP_CODES, RiskManager
from strategies.digit_differ.core.staking import StakeManager
from strategies.digit_differ.gateways.deriv_ws import DerivWebsocketClient

logger = logging.getLogger(__name__)

STOP_LOSS = "STOP_LOSS"
TAKE_PROFIT = "TAKE_PROFIT"
STAKING_STOPPED = "STAKING_STOPPED"

_RECOVERABLE = (RequestTimeout, VenueError, DataError)


class Phase(str, Enum):
    IDLE = "Idle"
    ANALYZING = "Analyzing"
    PROPOSED = "Proposed"
    PLACED = "Placed"
    OPEN = "Open"
    SETTLING = "Settling"
    COOLDOWN = "Cooldown"


@dataclass
class InstrumentState:
    symbol: str
    history: DigitHistory
    decimals: int
    phase: Phase = Phase.IDLE
    trade_id: Optional[str] = None
    tick_subscription: Optional[str] = None
    cooldown_token: int = 0
    cooldown_handle: Any = None
    loss_suspended: bool = False
    suspended_since: Optional[float] = None
    last_signal: Optional[Signal] = None


@dataclass
class SessionStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    failed: int = 0
    total_pnl: float = 0.0
    consecutive_losses: int = 0
    x2: int = 0
    x3: int = 0
    x4: int = 0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    def record(self, won: bool, pnl: float) -> None:
        self.trades += 1
        self.total_pnl += pnl
        if won:
            self.wins += 1
            self.consecutive_losses = 0
            return
        self.losses += 1
        self.consecutive_losses += 1
        if self.consecutive_losses == 2:
            self.x2 += 1
        elif self.consecutive_losses == 3:
            self.x3 += 1
        elif self.consecutive_losses == 4:
            self.x4 += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def load_dict(self, data: Dict[str, Any]) -> None:
        for key in asdict(self):
            if key in data:
                setattr(self, key, type(getattr(self, key))(data[key]))


class DigitDifferEngine:
    """
    Digit Differ 交易引擎 (TradeOrchestrator)

    架构:
    [Deriv WS] --(tick / contract / balance)--> [事件队列] --> [Engine 状态机]
                                                                 |
                                         [TickAnalyzer] [RiskManager] [StakeManager]

    每个品种: Idle -> Analyzing -> Proposed -> Placed -> Open -> Settling -> Cooldown -> Idle
    事件严格按到达顺序串行处理，状态变迁不会交错。
    """

    def __init__(
        self,
        cfg: BotConfig,
        *,
        client=None,
        analyzer: Optional[TickAnalyzer] = None,
        risk: Optional[RiskManager] = None,
        stakes: Optional[StakeManager] = None,
        notifier: Optional[BaseNotifier] = None,
        store: Optional[SqliteStateStore] = None,
        now_fn: Optional[Callable[[], float]] = None,
        today_fn: Optional[Callable[[], date]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.running = False
        self.halted = False
        self.halt_reason: Optional[str] = None
        self._now = now_fn or time.time
        self._rng = rng or random.Random()
        self.events: asyncio.Queue = asyncio.Queue()

        # 1. 组件
        self.client = client or DerivWebsocketClient(cfg.connection)
        self.analyzer = analyzer or build_analyzer(cfg.analyzer)
        self.risk = risk or RiskManager(cfg.risk, today_fn=today_fn or date.today)
        self.stakes = stakes or StakeManager(cfg.staking, self.risk)
        self.notifier = notifier or build_notifier(cfg.notifier)
        self.store = store

        # 2. 品种状态
        self.instruments: Dict[str, InstrumentState] = {
            symbol: InstrumentState(
                symbol=symbol,
                history=DigitHistory(cfg.trading.history_length),
                decimals=cfg.trading.decimals_for(symbol),
            )
            for symbol in cfg.trading.symbols
        }

        # 3. 交易跟踪
        self.trades: Dict[str, Trade] = {}
        self._by_contract: Dict[int, str] = {}
        self._reconfirm_attempts: Dict[str, int] = {}
        self.stats = SessionStats()
        self.balance = 0.0
        self._balance_sub: Optional[str] = None
        self.currency = cfg.trading.currency
        self.ticks_seen = 0
        self._last_warn_ts: Dict[str, float] = {}
        self._timers: List[asyncio.TimerHandle] = []
        self._stopped = False

        # 4. 静态分发表 + 连接回调
        self.client.register_handler("tick", self._on_tick_message)
        self.client.register_handler("proposal_open_contract", self._on_contract_message)
        self.client.register_handler("balance", self._on_balance_message)
        self.client.on_connection_lost = lambda err: self.post(ConnectionLostEvent(err))
        self.client.on_reconnected = lambda auth: self.post(ReconnectedEvent(auth or {}))
        self.client.on_fatal = lambda err: self.post(FatalEvent(err))

    # ------------------------------------------------------------------
    # 入站消息 -> 事件
    # ------------------------------------------------------------------

    def post(self, event: Any) -> None:
        self.events.put_nowait(event)

    def _on_tick_message(self, msg: Dict[str, Any]) -> None:
        tick = msg.get("tick")
        if not isinstance(tick, dict):
            raise DataError("tick message without tick body")
        self.post(TickEvent(str(tick.get("symbol", "")), tick))

    def _on_contract_message(self, msg: Dict[str, Any]) -> None:
        poc = msg.get("proposal_open_contract")
        if not isinstance(poc, dict):
            raise DataError("proposal_open_contract message without body")
        self.post(ContractUpdateEvent(poc, (msg.get("subscription") or {}).get("id")))

    def _on_balance_message(self, msg: Dict[str, Any]) -> None:
        body = msg.get("balance")
        if not isinstance(body, dict) or "balance" not in body:
            raise DataError("balance message without balance")
        try:
            value = float(body["balance"])
        except (TypeError, ValueError) as e:
            raise DataError(f"invalid balance: {body['balance']!r}") from e
        self.post(BalanceEvent(value, str(body.get("currency", ""))))

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self):
        """连接、鉴权、回填历史并订阅行情。AuthError / ReconnectExhausted 直接抛出。"""
        self.running = True
        logger.info(f"🚀 Starting Digit Differ Engine on {', '.join(self.instruments)}")
        self._load_state()
        auth = await self.client.connect()
        self._on_authorized(auth)
        await self._sync_market()
        self.notifier.notify("started", {
            "symbols": ", ".join(self.instruments),
            "balance": self.balance,
            "analyzer": getattr(self.analyzer, "name", type(self.analyzer).__name__),
            "stake": self.stakes.current_stake,
        })

    async def run(self):
        try:
            await self.start()
            while self.running:
                event = await self.events.get()
                await self.handle_event(event)
        finally:
            await self.stop()

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        for handle in self._timers:
            handle.cancel()
        for inst in self.instruments.values():
            if inst.cooldown_handle is not None:
                inst.cooldown_handle.cancel()
        self._timers = []
        await self.client.close()
        self._save_state()
        stats = self.get_statistics()
        logger.info(
            f"🏁 Engine stopped: {stats['trades']} trades, win rate {stats['win_rate'] * 100:.1f}%, "
            f"P&L {stats['total_pnl']:.2f}"
        )
        self.notifier.notify("stopped", {
            "trades": stats["trades"],
            "wins": stats["wins"],
            "losses": stats["losses"],
            "total_pnl": stats["total_pnl"],
            "reason": self.halt_reason or "stopped",
        })
        await self.notifier.flush()

    async def drain(self):
        """处理队列中已有的全部事件（测试与 dry-run 使用）。"""
        while not self.events.empty():
            await self.handle_event(self.events.get_nowait())

    async def handle_event(self, event: Any):
        if isinstance(event, TickEvent):
            await self._on_tick(event)
        elif isinstance(event, ContractUpdateEvent):
            await self._on_contract(event)
        elif isinstance(event, BalanceEvent):
            self.balance = event.balance
            self.risk.observe_balance(event.balance)
        elif isinstance(event, CooldownExpired):
            self._on_cooldown_expired(event)
        elif isinstance(event, ResubscribeEvent):
            await self._on_resubscribe(event)
        elif isinstance(event, ReconfirmEvent):
            await self._on_reconfirm(event)
        elif isinstance(event, ConnectionLostEvent):
            self._on_connection_lost(event)
        elif isinstance(event, ReconnectedEvent):
            self._on_authorized(event.auth)
            await self._sync_market()
            self.notifier.notify("reconnected", {"balance": self.balance, "in_flight": len(self.in_flight_trades())})
        elif isinstance(event, FatalEvent):
            logger.error(f"🚨 Fatal error, stopping: {event.error}")
            self.running = False
            self.notifier.notify("fatal", {"error": str(event.error)})
            raise event.error
        elif isinstance(event, StopEvent):
            logger.info(f"🛑 Stop requested: {event.reason}")
            self.running = False
        else:
            logger.warning(f"⚠️ Unknown event: {event!r}")

    # ------------------------------------------------------------------
    # 行情
    # ------------------------------------------------------------------

    def _on_authorized(self, auth: Dict[str, Any]) -> None:
        if "balance" in auth:
            self.balance = float(auth["balance"])
            self.risk.observe_balance(self.balance)
        if auth.get("currency"):
            self.currency = str(auth["currency"])

    async def _sync_market(self):
        """(重)连后：先确认在途合约，再回填历史、订阅行情与余额。"""
        try:
            for trade in list(self.in_flight_trades()):
                await self._reconfirm(trade)
            for inst in self.instruments.values():
                await self._backfill(inst)
                await self._subscribe_ticks(inst)
            await self._subscribe_balance()
        except ConnectionLost as e:
            logger.warning(f"⚠️ Connection lost during resync, waiting for reconnect: {e}")

    async def _backfill(self, inst: InstrumentState):
        try:
            prices, times = await self.client.ticks_history(inst.symbol, self.cfg.trading.history_length)
        except _RECOVERABLE as e:
            logger.warning(f"⚠️ {inst.symbol} history backfill failed: {e}")
            return
        digits = []
        for price in prices:
            try:
                digits.append(last_digit(price, inst.decimals))
            except DataError as e:
                logger.debug(f"{inst.symbol} skipping bad history price: {e}")
        inst.history.reset(digits, last_epoch=times[-1] if times else None)
        logger.info(f"📥 {inst.symbol} history loaded: {len(inst.history)} digits")

    async def _subscribe_ticks(self, inst: InstrumentState):
        try:
            sub = await self.client.subscribe("tick", inst.symbol)
        except VenueUnavailable as e:
            delay = self.cfg.connection.venue_unavailable_delay_s
            logger.warning(f"⚠️ {inst.symbol} unavailable ({e}), retrying in {delay:.0f}s")
            self._schedule(delay, ResubscribeEvent(inst.symbol))
            return
        except (RequestTimeout, VenueError) as e:
            delay = self.cfg.connection.reconnect_cap_s
            logger.warning(f"⚠️ {inst.symbol} tick subscription failed ({e}), retrying in {delay:.0f}s")
            self._schedule(delay, ResubscribeEvent(inst.symbol))
            return
        inst.tick_subscription = sub.id
        snapshot = sub.snapshot or {}
        if isinstance(snapshot.get("tick"), dict):
            self.post(TickEvent(inst.symbol, snapshot["tick"]))

    async def _subscribe_balance(self):
        try:
            sub = await self.client.subscribe("balance")
        except (RequestTimeout, VenueError) as e:
            logger.warning(f"⚠️ Balance subscription failed: {e}")
            return
        self._balance_sub = sub.id
        body = (sub.snapshot or {}).get("balance")
        if isinstance(body, dict) and "balance" in body:
            self.balance = float(body["balance"])
            self.risk.observe_balance(self.balance)

    async def _on_resubscribe(self, event: ResubscribeEvent):
        inst = self.instruments.get(event.symbol)
        if inst is None or inst.tick_subscription or not self.client.is_connected:
            return
        try:
            await self._backfill(inst)
            await self._subscribe_ticks(inst)
        except ConnectionLost as e:
            logger.warning(f"⚠️ {event.symbol} resubscribe interrupted: {e}")

    def _on_connection_lost(self, event: ConnectionLostEvent):
        # 断线后客户端的订阅全部失效
        for inst in self.instruments.values():
            inst.tick_subscription = None
        self._balance_sub = None
        in_flight = self.in_flight_trades()
        for trade in in_flight:
            trade.subscription_id = None
        if in_flight:
            ids = ", ".join(t.id for t in in_flight)
            logger.warning(f"⏸️ Connection lost with trades in flight ({ids}), awaiting reconfirmation")
        self.notifier.notify("connection_lost", {"error": str(event.error), "in_flight": len(in_flight)})

    # ------------------------------------------------------------------
    # 状态机
    # ------------------------------------------------------------------

    def in_flight_trades(self) -> List[Trade]:
        return [t for t in self.trades.values() if t.status in IN_FLIGHT_STATUSES]

    def _warn_rate_limited(self, symbol: str, key: str, msg: str, every_s: float = 30.0):
        now = self._now()
        k = f"{symbol}:{key}"
        last = self._last_warn_ts.get(k)
        if last is None or now - last >= every_s:
            logger.warning(msg)
            self._last_warn_ts[k] = now

    def _can_analyze(self, inst: InstrumentState) -> bool:
        if not self.running or self.halted or not self.client.is_connected:
            return False
        if inst.phase != Phase.IDLE or inst.loss_suspended:
            return False
        in_flight = self.in_flight_trades()
        if self.cfg.trading.parallel_trading:
            if any(t.asset == inst.symbol for t in in_flight):
                return False
        elif in_flight:
            return False
        if self.stakes.stopped:
            return False
        need = self.analyzer.min_history_length
        if len(inst.history) < need:
            self._warn_rate_limited(
                inst.symbol, "history", f"⚠️ {inst.symbol} history too short: {len(inst.history)} < {need}"
            )
            return False
        return True

    async def _on_tick(self, event: TickEvent):
        inst = self.instruments.get(event.symbol)
        if inst is None:
            return
        try:
            tick = parse_tick(event.payload)
            digit = inst.history.append_tick(tick, inst.decimals)
        except DataError as e:
            logger.warning(f"⚠️ {event.symbol} dropping malformed tick: {e}")
            return
        if digit is None:
            logger.debug(f"{event.symbol} skipping already seen tick @ {tick.epoch}")
            return
        self.ticks_seen += 1
        if self._can_analyze(inst):
            await self._evaluate(inst)

    async def _evaluate(self, inst: InstrumentState):
        inst.phase = Phase.ANALYZING
        signal = self.analyzer.analyze(inst.history.snapshot())
        inst.last_signal = signal
        if not signal.should_trade:
            logger.debug(f"{inst.symbol} no trade: {signal.reason}")
            inst.phase = Phase.IDLE
            return

        inst.phase = Phase.PROPOSED
        plan = self.stakes.plan(self.balance, signal.confidence)
        decision = self.risk.can_trade(self.balance, plan.amount)
        if not decision.allowed:
            inst.phase = Phase.IDLE
            self._warn_rate_limited(
                inst.symbol, f"deny:{decision.code}", f"🚫 {inst.symbol} trade denied [{decision.code}] {decision.message}"
            )
            if decision.code in HARD_STOP_CODES:
                self._halt(decision.code, decision.message)
            return

        trade = Trade(
            id=uuid.uuid4().hex[:12],
            asset=inst.symbol,
            direction=self.cfg.trading.contract_type,
            stake=plan.amount,
            barrier=signal.target,
            reason=signal.reason,
            opened_at=self._now(),
        )
        self.trades[trade.id] = trade
        inst.trade_id = trade.id
        logger.info(
            f"🎯 {inst.symbol} {trade.direction} barrier={trade.barrier} stake={trade.stake:.2f} "
            f"({plan.basis}, confidence {signal.confidence * 100:.1f}%)"
        )
        await self._place(inst, trade)

    async def _place(self, inst: InstrumentState, trade: Trade):
        tcfg = self.cfg.trading
        try:
            buy = await self.client.buy(
                symbol=trade.asset,
                amount=trade.stake,
                contract_type=trade.direction,
                barrier=trade.barrier,
                currency=self.currency,
                duration=tcfg.duration,
                duration_unit=tcfg.duration_unit,
            )
        except (ConnectionLost, RequestTimeout, VenueError) as e:
            self._fail_trade(trade, f"buy failed: {e}")
            if isinstance(e, VenueUnavailable):
                self._start_cooldown(inst, self.cfg.connection.venue_unavailable_delay_s)
            return

        trade.status = TradeStatus.PLACED
        trade.contract_id = int(buy["contract_id"])
        trade.buy_price = float(buy.get("buy_price", trade.stake))
        if "balance_after" in buy:
            self.balance = float(buy["balance_after"])
            self.risk.observe_balance(self.balance)
        self.risk.record_open()
        self._by_contract[trade.contract_id] = trade.id
        inst.phase = Phase.PLACED
        self._record_trade(trade)
        logger.info(f"📤 {trade.asset} contract {trade.contract_id} placed ({trade.buy_price:.2f} {self.currency})")
        self.notifier.notify("trade_placed", {
            "symbol": trade.asset,
            "barrier": trade.barrier,
            "stake": trade.stake,
            "contract_id": trade.contract_id,
        })

        try:
            await self._track_contract(trade)
        except ConnectionLost:
            logger.warning(f"⏸️ Contract {trade.contract_id} tracking interrupted, will reconfirm after reconnect")
        except (RequestTimeout, VenueError) as e:
            logger.warning(f"⚠️ Contract {trade.contract_id} subscription failed ({e}), retrying")
            self._schedule(self.cfg.connection.request_timeout_s, ReconfirmEvent(trade.id))

    async def _track_contract(self, trade: Trade):
        sub = await self.client.subscribe("contract", trade.contract_id)
        if trade.status not in IN_FLIGHT_STATUSES:
            await self.client.unsubscribe(sub.id)
            return
        trade.subscription_id = sub.id
        poc = (sub.snapshot or {}).get("proposal_open_contract")
        if isinstance(poc, dict):
            await self._apply_contract(poc, sub.id)

    async def _reconfirm(self, trade: Trade):
        """重连后重新订阅在途合约；多次无法确认则标记 Failed（不重新下单）。"""
        attempts = self._reconfirm_attempts.get(trade.id, 0) + 1
        self._reconfirm_attempts[trade.id] = attempts
        limit = self.cfg.trading.max_reconfirm_attempts
        logger.info(f"🔎 Reconfirming contract {trade.contract_id} (attempt {attempts}/{limit})")
        try:
            await self._track_contract(trade)
        except ConnectionLost:
            if attempts >= limit:
                self._fail_trade(trade, f"contract {trade.contract_id} unconfirmed after {attempts} attempts")
            raise
        except (RequestTimeout, VenueError) as e:
            if attempts >= limit:
                self._fail_trade(trade, f"contract {trade.contract_id} unconfirmed after {attempts} attempts: {e}")
            else:
                self._schedule(self.cfg.connection.request_timeout_s, ReconfirmEvent(trade.id))
            return
        self._reconfirm_attempts.pop(trade.id, None)

    async def _on_reconfirm(self, event: ReconfirmEvent):
        trade = self.trades.get(event.trade_id)
        if trade is None or trade.status not in IN_FLIGHT_STATUSES or trade.subscription_id:
            return
        if not self.client.is_connected:
            return
        try:
            await self._reconfirm(trade)
        except ConnectionLost as e:
            logger.warning(f"⚠️ Reconfirm interrupted: {e}")

    async def _on_contract(self, event: ContractUpdateEvent):
        try:
            await self._apply_contract(event.contract, event.subscription_id)
        except DataError as e:
            logger.warning(f"⚠️ Dropping malformed contract update: {e}")

    async def _apply_contract(self, poc: Dict[str, Any], sub_id: Optional[str]):
        try:
            contract_id = int(poc["contract_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise DataError(f"contract update without contract_id: {poc!r}") from e
        trade = self.trades.get(self._by_contract.get(contract_id, ""))
        if trade is None or trade.status not in IN_FLIGHT_STATUSES:
            return
        if sub_id:
            trade.subscription_id = sub_id
        if trade.status == TradeStatus.PLACED:
            trade.status = TradeStatus.OPEN
            self.instruments[trade.asset].phase = Phase.OPEN
        if poc.get("is_sold"):
            await self._settle(trade, poc)

    async def _settle(self, trade: Trade, poc: Dict[str, Any]):
        inst = self.instruments[trade.asset]
        inst.phase = Phase.SETTLING

        profit = float(poc.get("profit") or 0.0)
        status = poc.get("status")
        won = status == "won" if status in ("won", "lost") else profit > 0
        trade.status = TradeStatus.SETTLED
        trade.profit = profit
        trade.won = won
        trade.settled_at = self._now()
        exit_value = poc.get("exit_tick_display_value", poc.get("exit_tick"))
        if exit_value is not None:
            try:
                trade.exit_digit = last_digit(exit_value, inst.decimals)
            except DataError:
                trade.exit_digit = None

        if self._balance_sub is None:
            # 没有余额推送时按派彩在本地估算余额
            self.balance += (trade.buy_price or trade.stake) + profit
            self.risk.record_settlement(trade, won, profit, self.balance)
        else:
            self.risk.record_settlement(trade, won, profit)
        next_stake = self.stakes.on_settlement(trade.id, won)
        self.stats.record(won, profit)
        self._by_contract.pop(trade.contract_id, None)
        self._reconfirm_attempts.pop(trade.id, None)
        if trade.subscription_id:
            await self.client.unsubscribe(trade.subscription_id)

        icon = "✅" if won else "❌"
        logger.info(
            f"{icon} {trade.asset} {'WON' if won else 'LOST'} {profit:+.2f} | exit digit {trade.exit_digit} "
            f"vs {trade.barrier} | next stake {next_stake:.2f} | session P&L {self.stats.total_pnl:+.2f}"
        )
        self._record_trade(trade)
        self._save_state()
        self.notifier.notify("trade_settled", {
            "symbol": trade.asset,
            "result": "won" if won else "lost",
            "profit": profit,
            "balance": self.balance,
            "total_pnl": self.stats.total_pnl,
            "win_rate": self.stats.win_rate,
            "x2": self.stats.x2,
            "x3": self.stats.x3,
            "x4": self.stats.x4,
        })

        self._apply_suspension(inst, won)
        self._start_cooldown(inst, self._cooldown_delay(won))
        self._check_session_limits()
        if self.stakes.stopped:
            self._halt(STAKING_STOPPED, "staking progression reached its limit")
        self._maybe_finish()

    def _fail_trade(self, trade: Trade, reason: str):
        was_open = trade.status in (TradeStatus.PLACED, TradeStatus.OPEN)
        trade.status = TradeStatus.FAILED
        trade.reason = reason
        trade.settled_at = self._now()
        if was_open:
            self.risk.release()
        if trade.contract_id is not None:
            self._by_contract.pop(trade.contract_id, None)
        self._reconfirm_attempts.pop(trade.id, None)
        self.stats.failed += 1

        inst = self.instruments[trade.asset]
        if inst.trade_id == trade.id:
            inst.trade_id = None
            inst.phase = Phase.IDLE
        logger.error(f"❌ Trade {trade.id} ({trade.asset}) failed: {reason}")
        self._record_trade(trade)
        self.notifier.notify("trade_failed", {"symbol": trade.asset, "reason": reason})
        self._maybe_finish()

    # ------------------------------------------------------------------
    # 冷却 / 暂停 / 熔断
    # ------------------------------------------------------------------

    def _cooldown_delay(self, won: bool) -> float:
        tcfg = self.cfg.trading
        delay = self._rng.uniform(tcfg.min_wait_s, tcfg.max_wait_s)
        if not won:
            delay *= 1.0 + tcfg.loss_cooldown_factor * self.risk.state.consecutive_losses
        return delay

    def _schedule(self, delay: float, event: Any) -> asyncio.TimerHandle:
        handle = asyncio.get_running_loop().call_later(delay, self.post, event)
        self._timers = [h for h in self._timers if not h.cancelled()]
        self._timers.append(handle)
        return handle

    def _start_cooldown(self, inst: InstrumentState, delay: float):
        inst.trade_id = None
        if inst.cooldown_handle is not None:
            inst.cooldown_handle.cancel()
            inst.cooldown_handle = None
        inst.cooldown_token += 1
        if delay <= 0:
            inst.phase = Phase.IDLE
            return
        inst.phase = Phase.COOLDOWN
        inst.cooldown_handle = self._schedule(delay, CooldownExpired(inst.symbol, inst.cooldown_token))
        logger.info(f"⏳ {inst.symbol} cooling down for {delay:.1f}s")

    def _on_cooldown_expired(self, event: CooldownExpired):
        inst = self.instruments.get(event.symbol)
        if inst is None or event.token != inst.cooldown_token or inst.phase != Phase.COOLDOWN:
            return
        inst.cooldown_handle = None
        inst.phase = Phase.IDLE
        logger.debug(f"{inst.symbol} cooldown over")

    def suspended_symbols(self) -> List[str]:
        return [s for s, inst in self.instruments.items() if inst.loss_suspended]

    def _reactivate_longest_suspended(self) -> Optional[str]:
        suspended = [inst for inst in self.instruments.values() if inst.loss_suspended]
        if not suspended:
            return None
        oldest = min(suspended, key=lambda i: (i.suspended_since or 0.0, i.symbol))
        oldest.loss_suspended = False
        oldest.suspended_since = None
        logger.info(f"▶️ {oldest.symbol} reactivated")
        return oldest.symbol

    def _apply_suspension(self, inst: InstrumentState, won: bool):
        tcfg = self.cfg.trading
        if not tcfg.suspend_on_loss or len(self.instruments) < 2:
            return
        if won:
            self._reactivate_longest_suspended()
            return
        inst.loss_suspended = True
        inst.suspended_since = self._now()
        logger.info(f"⏸️ {inst.symbol} suspended after loss")
        suspended = self.suspended_symbols()
        if len(suspended) > tcfg.max_suspended or len(suspended) >= len(self.instruments):
            self._reactivate_longest_suspended()

    def _check_session_limits(self):
        tcfg = self.cfg.trading
        pnl = self.stats.total_pnl
        if tcfg.stop_loss is not None and pnl <= -tcfg.stop_loss:
            self._halt(STOP_LOSS, f"session P&L {pnl:.2f} hit stop loss {tcfg.stop_loss:.2f}")
        elif tcfg.take_profit is not None and pnl >= tcfg.take_profit:
            self._halt(TAKE_PROFIT, f"session P&L {pnl:.2f} hit take profit {tcfg.take_profit:.2f}")

    def _halt(self, code: str, message: str):
        if self.halted:
            return
        self.halted = True
        self.halt_reason = f"{code}: {message}"
        logger.error(f"🛑 Trading halted [{code}] {message}")
        self.notifier.notify("halted", {"code": code, "message": message, **self._brief_stats()})
        self._maybe_finish()

    def _maybe_finish(self):
        if self.halted and not self.in_flight_trades():
            self.running = False

    # ------------------------------------------------------------------
    # 持久化 / 统计
    # ------------------------------------------------------------------

    def _load_state(self):
        if self.store is None:
            return
        try:
            state = self.store.load_strategy_state()
        except sqlite3.Error as e:
            logger.warning(f"⚠️ Could not load saved state, using defaults: {e}")
            return
        if not state:
            return
        try:
            self.stakes.load_dict(state.get("staking") or {})
            self.stats.load_dict(state.get("session") or {})
            self.risk.load_dict(state.get("risk") or {})
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ Saved state is invalid, using defaults: {e}")
            return
        logger.info(f"💾 Restored state: stake {self.stakes.current_stake:.2f}, {self.stats.trades} trades")

    def _save_state(self):
        if self.store is None:
            return
        try:
            self.store.save_strategy_state({
                "staking": self.stakes.to_dict(),
                "session": self.stats.to_dict(),
                "risk": self.risk.to_dict(),
            })
        except sqlite3.Error as e:
            logger.warning(f"⚠️ Could not save state: {e}")

    def _record_trade(self, trade: Trade):
        if self.store is None:
            return
        try:
            self.store.record_trade(trade)
        except sqlite3.Error as e:
            logger.warning(f"⚠️ Could not record trade {trade.id}: {e}")

    def _brief_stats(self) -> Dict[str, Any]:
        return {
            "trades": self.stats.trades,
            "total_pnl": self.stats.total_pnl,
            "balance": self.balance,
        }

    def get_statistics(self) -> Dict[str, Any]:
        s = self.stats
        return {
            "trades": s.trades,
            "wins": s.wins,
            "losses": s.losses,
            "failed": s.failed,
            "win_rate": s.win_rate,
            "total_pnl": s.total_pnl,
            "consecutive_losses": s.consecutive_losses,
            "x2": s.x2,
            "x3": s.x3,
            "x4": s.x4,
            "current_stake": self.stakes.current_stake,
            "balance": self.balance,
            "ticks_seen": self.ticks_seen,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "suspended": self.suspended_symbols(),
            "phases": {sym: inst.phase.value for sym, inst in self.instruments.items()},
            "risk": self.risk.get_risk_metrics(self.balance),
        }
