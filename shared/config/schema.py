"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 启动阶段尽早失败，避免 typo/类型错误在实盘中“隐蔽爆炸”；
- 业务代码只读取已校验的字段，不再 `cfg.get(...)`。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConnectionConfig(BaseModel):
    """交易所连接配置。"""
    ws_url: str = "wss://ws.derivws.com/websockets/v3"
    app_id: str = "1089"
    token: str = ""

    request_timeout_s: float = Field(default=10.0, gt=0)
    buy_timeout_s: float = Field(default=10.0, gt=0)
    heartbeat_interval_s: float = Field(default=30.0, gt=0)

    # 重连退避: delay = min(base * 2^attempt, cap)
    reconnect_base_s: float = Field(default=1.0, gt=0)
    reconnect_cap_s: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=1)

    rate_limit_delay_s: float = Field(default=60.0, ge=0)
    rate_limit_retries: int = Field(default=3, ge=0)
    venue_unavailable_delay_s: float = Field(default=3600.0, ge=0)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_backoff(self) -> "ConnectionConfig":
        if self.reconnect_base_s > self.reconnect_cap_s:
            raise ValueError("reconnect_base_s must be <= reconnect_cap_s")
        return self


DEFAULT_DIGIT_DECIMALS: Dict[str, int] = {
    "R_10": 3,
    "R_25": 3,
    "R_50": 4,
    "R_75": 4,
    "RDBULL": 4,
    "RDBEAR": 4,
}


class TradingConfig(BaseModel):
    """交易生命周期配置。"""
    symbols: List[str] = Field(default_factory=lambda: ["R_50"])
    contract_type: str = "DIGITDIFF"
    currency: str = "USD"
    duration: int = Field(default=1, ge=1)
    duration_unit: str = "t"
    history_length: int = Field(default=5000, ge=2)

    # False: 全局单笔在途；True: 每个品种各自单笔在途
    parallel_trading: bool = False
    suspend_on_loss: bool = True
    max_suspended: int = Field(default=2, ge=0)

    min_wait_s: float = Field(default=3.0, ge=0)
    max_wait_s: float = Field(default=8.0, ge=0)
    loss_cooldown_factor: float = Field(default=0.5, ge=0)

    stop_loss: Optional[float] = Field(default=None, gt=0)
    take_profit: Optional[float] = Field(default=None, gt=0)

    max_reconfirm_attempts: int = Field(default=3, ge=1)
    digit_decimals: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_DIGIT_DECIMALS))
    default_digit_decimals: int = Field(default=2, ge=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_trading(self) -> "TradingConfig":
        if not self.symbols:
            raise ValueError("trading.symbols must not be empty")
        if self.min_wait_s > self.max_wait_s:
            raise ValueError("trading.min_wait_s must be <= trading.max_wait_s")
        return self

    def decimals_for(self, symbol: str) -> int:
        return int(self.digit_decimals.get(symbol, self.default_digit_decimals))


class AnalyzerConfig(BaseModel):
    """分析器配置（type + params）。

    说明：
    - 参数不允许“散落在顶层”：必须进入 `params`；
    - `analyzer:` 下的扁平字段会被自动挪到 `params`，写起来方便、schema 又保持严格。
    """
    type: str = "statistical"
    params: Dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _pack_flat_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "params" in data and isinstance(data.get("params"), dict) and set(data.keys()) <= {"type", "params"}:
            return data
        analyzer_type = data.get("type", "statistical")
        params = {k: v for k, v in data.items() if k not in {"type", "params"}}
        existing = data.get("params")
        if isinstance(existing, dict):
            params = {**params, **existing}
        return {"type": analyzer_type, "params": params}

    @property
    def min_history_length(self) -> int:
        return int(self.params.get("min_history_length", 100))


class RiskConfig(BaseModel):
    """风控配置。"""
    daily_loss_limit: float = Field(default=50.0, gt=0)
    max_drawdown_pct: float = Field(default=0.2, gt=0, le=1)
    min_balance_to_trade: float = Field(default=10.0, ge=0)
    stop_after_consecutive_losses: int = Field(default=5, ge=1)
    max_concurrent_trades: int = Field(default=1, ge=1)
    position_size_pct: float = Field(default=0.05, gt=0, le=1)

    high_confidence_threshold: float = Field(default=0.8, ge=0, le=1)
    confidence_multipliers: Dict[str, float] = Field(default_factory=lambda: {"high": 1.5, "normal": 1.0})
    stake_step: float = Field(default=0.01, gt=0)

    model_config = ConfigDict(extra="forbid")


class StakingConfig(BaseModel):
    """下单金额策略。"""
    policy: Literal["fixed", "martingale", "capped_progression", "sized"] = "martingale"
    base_stake: float = Field(default=1.0, gt=0)
    loss_multiplier: float = Field(default=2.0, ge=1)
    min_stake: float = Field(default=0.35, gt=0)
    max_stake: float = Field(default=100.0, gt=0)
    # hold: 超过上限时保持当前金额；clamp: 截断到上限
    cap_mode: Literal["hold", "clamp"] = "hold"
    max_steps: int = Field(default=5, ge=1)
    reset_after_max: Literal["reset", "stop", "continue"] = "reset"

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_bounds(self) -> "StakingConfig":
        if not (self.min_stake <= self.base_stake <= self.max_stake):
            raise ValueError("staking requires min_stake <= base_stake <= max_stake")
        return self


class NotifierConfig(BaseModel):
    enabled: bool = False
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timeout_s: float = Field(default=10.0, gt=0)
    model_config = ConfigDict(extra="forbid")


class PersistenceConfig(BaseModel):
    """本地策略状态（SQLite）配置。"""
    enabled: bool = True
    path: str = "dataset/state/bot_state.sqlite3"
    model_config = ConfigDict(extra="forbid")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None
    rich: bool = True
    model_config = ConfigDict(extra="forbid")


class BotConfig(BaseModel):
    """应用总配置。"""
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    staking: StakingConfig = Field(default_factory=StakingConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @model_validator(mode="after")
    def _check_history(self) -> "BotConfig":
        if self.trading.history_length < self.analyzer.min_history_length:
            raise ValueError(
                "trading.history_length must be >= analyzer.min_history_length "
                f"({self.trading.history_length} < {self.analyzer.min_history_length})"
            )
        return self
