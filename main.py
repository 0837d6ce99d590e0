"""Digit Differ Bot 统一命令行入口。

- `runner`：连接 Deriv 并运行交易引擎；`--dry-run` 时对接进程内模拟交易所。
- `check-config`：只校验配置（含分析器参数）后退出。

致命错误（鉴权失败、重连耗尽、配置非法）以退出码 1 结束。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
import sys
from dataclasses import dataclass
from typing import Any

from shared.config.config_loader import load_config
from shared.config.schema import BotConfig
from shared.state.sqlite_store import SqliteStateStore
from strategies.digit_differ.core.analyzers.registry import build_analyzer
from strategies.digit_differ.core.errors import FATAL_ERRORS, ConfigError
from strategies.digit_differ.core.events import StopEvent
from strategies.digit_differ.gateways.deriv_ws import DerivWebsocketClient
from strategies.digit_differ.main import DigitDifferEngine
from strategies.digit_differ.sim.fakes import FakeDerivServer
from utils.logging import setup_logging

logger = logging.getLogger("digit_bot")


@dataclass
class CliArgs:
    """命令行参数结构。

    config: 配置文件路径
    task: 要运行的任务类型 (runner/check-config)
    """
    config: str
    task: str
    dry_run: bool = False
    max_ticks: int | None = None   # 仅 dry-run：推送多少轮 tick 后停止
    tick_interval: float = 0.1     # 仅 dry-run：模拟 tick 间隔（秒）


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="digit-bot", description="Deriv digit differ bot")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/config.yml)",
        )

    # 允许 `python main.py --config ... runner` 与 `python main.py runner --config ...`
    _add_config_arg(parser, default="config/config.yml")

    sub = parser.add_subparsers(dest="task")

    p_runner = sub.add_parser("runner", help="运行交易引擎")
    _add_config_arg(p_runner, default=argparse.SUPPRESS)
    p_runner.add_argument("--dry-run", action="store_true", help="对接模拟交易所，不连接真实账户")
    p_runner.add_argument("--max-ticks", type=int, default=None, help="dry-run 推送多少轮 tick 后退出")
    p_runner.add_argument("--tick-interval", type=float, default=0.1, help="dry-run tick 间隔（秒）")

    p_check = sub.add_parser("check-config", help="校验配置后退出")
    _add_config_arg(p_check, default=argparse.SUPPRESS)

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "runner",
        dry_run=bool(getattr(ns, "dry_run", False)),
        max_ticks=getattr(ns, "max_ticks", None),
        tick_interval=float(getattr(ns, "tick_interval", 0.1)),
    )


def _open_store(cfg: BotConfig) -> SqliteStateStore | None:
    if not cfg.persistence.enabled:
        return None
    try:
        return SqliteStateStore(cfg.persistence.path)
    except (sqlite3.Error, OSError) as e:
        logger.warning(f"⚠️ State store unavailable ({e}), running without persistence")
        return None


async def _drive_simulation(server: FakeDerivServer, engine: DigitDifferEngine, args: CliArgs) -> None:
    await server.run(interval_s=args.tick_interval, max_ticks=args.max_ticks)
    engine.post(StopEvent("dry-run finished"))


async def run_engine(cfg: BotConfig, args: CliArgs) -> dict[str, Any]:
    store = _open_store(cfg)
    driver = None
    if args.dry_run:
        connection = cfg.connection.model_copy(update={"token": cfg.connection.token or "dry-run"})
        server = FakeDerivServer(token=None, currency=cfg.trading.currency, decimals=cfg.trading.digit_decimals)
        client = DerivWebsocketClient(connection, connect_fn=server.connect)
        engine = DigitDifferEngine(cfg, client=client, store=store)
        driver = asyncio.create_task(_drive_simulation(server, engine, args))
        logger.info("🧪 Dry run against simulated venue")
    else:
        engine = DigitDifferEngine(cfg, store=store)
    try:
        await engine.run()
    finally:
        if driver is not None and not driver.done():
            driver.cancel()
            try:
                await driver
            except asyncio.CancelledError:
                pass
        if store is not None:
            store.close()
    return engine.get_statistics()


def check_config(cfg: BotConfig) -> None:
    analyzer = build_analyzer(cfg.analyzer)
    print(f"✅ Config OK: symbols={cfg.trading.symbols} analyzer={analyzer.name} "
          f"staking={cfg.staking.policy} base_stake={cfg.staking.base_stake}")


def main(argv: list[str] | None = None) -> int:
    """程序主入口；返回进程退出码。"""
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (FileNotFoundError, ConfigError) as e:
        setup_logging()
        logger.error(f"❌ {e}")
        return 1

    setup_logging(cfg.logging.level, cfg.logging.file, rich=cfg.logging.rich)

    if args.task == "check-config":
        try:
            check_config(cfg)
        except ConfigError as e:
            logger.error(f"❌ {e}")
            return 1
        return 0

    if args.task == "runner":
        try:
            summary = asyncio.run(run_engine(cfg, args))
        except ConfigError as e:
            logger.error(f"❌ {e}")
            return 1
        except FATAL_ERRORS as e:
            logger.error(f"🚨 Fatal: {e}")
            return 1
        except KeyboardInterrupt:
            print("\n👋 Bye!")
            return 0
        logger.info(f"📊 Summary: {summary['trades']} trades, P&L {summary['total_pnl']:+.2f}")
        return 0

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    sys.exit(main())
