"""通知（fire-and-forget）：失败只记录日志，绝不阻塞交易逻辑。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import requests

from shared.config.schema import NotifierConfig

logger = logging.getLogger(__name__)

_EVENT_ICONS = {
    "started": "🚀",
    "trade_placed": "📤",
    "trade_settled": "📊",
    "trade_failed": "⚠️",
    "halted": "🛑",
    "connection_lost": "🔌",
    "reconnected": "✅",
    "fatal": "🚨",
    "stopped": "🏁",
}


def format_message(event: str, payload: dict[str, Any]) -> str:
    icon = _EVENT_ICONS.get(event, "ℹ️")
    lines = [f"{icon} {event.replace('_', ' ').upper()}"]
    for key, value in payload.items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class BaseNotifier:
    """notify() 立即返回；真正的发送在后台任务里完成。"""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def notify(self, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        payload = dict(payload or {})
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            self._deliver_safe(event, payload)
            return
        task = loop.create_task(self._send_safe(event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send_safe(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self.send(event, payload)
        except Exception as e:
            logger.warning(f"⚠️ Notification '{event}' failed: {e}")

    def _deliver_safe(self, event: str, payload: dict[str, Any]) -> None:
        try:
            self.deliver(event, payload)
        except Exception as e:
            logger.warning(f"⚠️ Notification '{event}' failed: {e}")

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.deliver, event, payload)

    def deliver(self, event: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def flush(self, timeout: float = 5.0) -> None:
        """等待尚未完成的通知（退出前调用）。"""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)


class LogNotifier(BaseNotifier):
    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self.deliver(event, payload)

    def deliver(self, event: str, payload: dict[str, Any]) -> None:
        logger.info(format_message(event, payload).replace("\n", " | "))


class TelegramNotifier(BaseNotifier):
    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, token: str, chat_id: str, timeout_s: float = 10.0, session: Any = None):
        super().__init__()
        self.token = token
        self.chat_id = chat_id
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def deliver(self, event: str, payload: dict[str, Any]) -> None:
        resp = self.session.post(
            self.API_URL.format(token=self.token),
            json={"chat_id": self.chat_id, "text": format_message(event, payload)},
            timeout=self.timeout_s,
        )
        resp.raise_for_status()


def build_notifier(cfg: NotifierConfig) -> BaseNotifier:
    if cfg.enabled and cfg.telegram_token and cfg.telegram_chat_id:
        return TelegramNotifier(cfg.telegram_token, cfg.telegram_chat_id, timeout_s=cfg.timeout_s)
    if cfg.enabled:
        logger.warning("⚠️ Notifier enabled but telegram_token/telegram_chat_id missing; logging only")
    return LogNotifier()
