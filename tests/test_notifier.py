from unittest.mock import MagicMock

import pytest
import requests

from shared.config.schema import NotifierConfig
from strategies.digit_differ.core.notifier import (
    LogNotifier,
    TelegramNotifier,
    build_notifier,
    format_message,
)


def test_format_message():
    text = format_message("trade_settled", {"symbol": "R_50", "profit": 0.091})
    assert text.splitlines() == ["📊 TRADE SETTLED", "symbol: R_50", "profit: 0.09"]


def test_telegram_delivers_outside_event_loop():
    session = MagicMock()
    notifier = TelegramNotifier("tkn", "42", session=session)
    notifier.notify("started", {"symbols": "R_50"})

    session.post.assert_called_once()
    url = session.post.call_args[0][0]
    body = session.post.call_args[1]["json"]
    assert url == "https://api.telegram.org/bottkn/sendMessage"
    assert body["chat_id"] == "42"
    assert "STARTED" in body["text"]


def test_telegram_failure_is_swallowed():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("down")
    notifier = TelegramNotifier("tkn", "42", session=session)
    notifier.notify("halted", {"code": "STOP_LOSS"})
    assert session.post.call_count == 1


@pytest.mark.asyncio
async def test_notify_inside_loop_does_not_block():
    session = MagicMock()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
    notifier = TelegramNotifier("tkn", "42", session=session)

    notifier.notify("trade_failed", {"reason": "timeout"})
    await notifier.flush()
    assert session.post.call_count == 1


@pytest.mark.asyncio
async def test_log_notifier(caplog):
    notifier = LogNotifier()
    with caplog.at_level("INFO"):
        notifier.notify("stopped", {"trades": 3})
        await notifier.flush()
    assert "STOPPED | trades: 3" in caplog.text


def test_build_notifier():
    assert isinstance(build_notifier(NotifierConfig()), LogNotifier)
    assert isinstance(build_notifier(NotifierConfig(enabled=True)), LogNotifier)
    tg = build_notifier(NotifierConfig(enabled=True, telegram_token="t", telegram_chat_id="c"))
    assert isinstance(tg, TelegramNotifier)
