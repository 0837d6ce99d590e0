"""分析器注册表：字符串 -> TickAnalyzer 实现。

engine 不关心具体算法，分析器实例必须由配置驱动构建。
"""

from __future__ import annotations

import difflib
import inspect
from typing import Any, Mapping

from shared.config.schema import AnalyzerConfig
from strategies.digit_differ.core.analyzers.base import TickAnalyzer
from strategies.digit_differ.core.analyzers.repetition import RepetitionPatternAnalyzer
from strategies.digit_differ.core.analyzers.statistical import StatisticalAnalyzer
from strategies.digit_differ.core.analyzers.survival import SurvivalAnalyzer
from strategies.digit_differ.core.errors import ConfigError

_REGISTRY: dict[str, type] = {}


def register_analyzer(name: str, cls: type) -> None:
    _REGISTRY[name] = cls


def available_analyzers() -> list[str]:
    return sorted(_REGISTRY)


def get_analyzer_cls(name: str) -> type:
    if name not in _REGISTRY:
        raise ConfigError(f"Unknown analyzer: {name} (available: {', '.join(available_analyzers())})")
    return _REGISTRY[name]


def _init_params(cls: type) -> set[str] | None:
    sig = inspect.signature(cls.__init__)
    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return None
    return {name for name in sig.parameters.keys() if name != "self"}


def _check_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """参数名拼错直接报错（附近似建议），避免配置悄悄失效。"""
    allowed = _init_params(cls)
    if allowed is None:
        return dict(params)
    unknown = sorted(k for k in params if k not in allowed)
    if unknown:
        parts = []
        for k in unknown:
            matches = difflib.get_close_matches(k, sorted(allowed), n=1, cutoff=0.75)
            parts.append(f"{k} (did you mean '{matches[0]}'?)" if matches else k)
        raise ConfigError(f"analyzer '{cls.__name__}' got unknown params: {', '.join(parts)}")
    return dict(params)


def build_analyzer(cfg: AnalyzerConfig | Mapping[str, Any] | None) -> TickAnalyzer:
    """从配置构建分析器实例。

    支持：
    - AnalyzerConfig（来自 shared.config.schema）
    - dict（含 type + 参数字段）
    """
    if cfg is None:
        return StatisticalAnalyzer()

    if isinstance(cfg, AnalyzerConfig):
        name = str(cfg.type or "statistical")
        params = dict(cfg.params or {})
    elif isinstance(cfg, Mapping):
        name = str(cfg.get("type") or "statistical")
        params = dict(cfg.get("params") or {k: v for k, v in cfg.items() if k != "type"})
    else:
        raise ConfigError("analyzer cfg must be AnalyzerConfig or dict")

    cls = get_analyzer_cls(name)
    kwargs = _check_init_kwargs(cls, params)
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid params for analyzer '{name}': {exc}") from exc


register_analyzer(StatisticalAnalyzer.name, StatisticalAnalyzer)
register_analyzer(RepetitionPatternAnalyzer.name, RepetitionPatternAnalyzer)
register_analyzer(SurvivalAnalyzer.name, SurvivalAnalyzer)
