"""错误分类（Failure taxonomy）。

协议层与交易所错误在 ProtocolClient / Engine 边界内恢复；
只有 AuthError 与 ReconnectExhausted 是致命错误。
"""

from __future__ import annotations

from typing import Any


class BotError(Exception):
    """所有机器人错误的基类。"""


class VenueConnectionError(BotError):
    """连接层瞬时错误（可按退避策略重试）。"""


class ConnectionLost(VenueConnectionError):
    """通道已关闭：所有挂起请求以此错误失败。"""


class ReconnectExhausted(BotError):
    """重连次数耗尽（致命）。"""


class AuthError(BotError):
    """凭证无效（致命，不重试）。"""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class RequestTimeout(BotError):
    """关联请求在超时时间内没有收到响应。"""

    def __init__(self, req_id: int, timeout_s: float):
        super().__init__(f"Request {req_id} timed out after {timeout_s:.1f}s")
        self.req_id = req_id
        self.timeout_s = timeout_s


class VenueError(BotError):
    """交易所返回的错误信封 `{error: {code, message}}`。"""

    retryable = False

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class RateLimited(VenueError):
    retryable = True


class VenueUnavailable(VenueError):
    """市场关闭/服务不可用：长延迟后重试。"""

    retryable = True


class VenueValidationError(VenueError):
    """参数校验类错误：放弃本次尝试，不盲目重试。"""


class DataError(BotError):
    """畸形 tick/history：丢弃并记录，绝不向上传播为崩溃。"""


class ConfigError(BotError, ValueError):
    """启动期配置错误（致命）。"""


AUTH_ERROR_CODES = frozenset({"InvalidToken", "AuthorizationRequired", "InvalidAppID"})
RATE_LIMIT_CODES = frozenset({"RateLimit"})
UNAVAILABLE_CODES = frozenset({"MarketIsClosed", "ServiceUnavailable"})

FATAL_ERRORS = (AuthError, ReconnectExhausted)


def classify_error(error: Any) -> BotError:
    """把错误信封映射到错误分类。"""
    if not isinstance(error, dict):
        return VenueValidationError("UnknownError", str(error))
    code = str(error.get("code") or "UnknownError")
    message = str(error.get("message") or "")
    if code in AUTH_ERROR_CODES:
        return AuthError(f"{code}: {message}", code=code)
    if code in RATE_LIMIT_CODES:
        return RateLimited(code, message)
    if code in UNAVAILABLE_CODES:
        return VenueUnavailable(code, message)
    return VenueValidationError(code, message)
