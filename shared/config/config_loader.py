"""配置加载。

支持 YAML 配置、环境变量占位符 `${VAR}` 展开，以及 .env/.env.local 自动加载。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from shared.config.schema import BotConfig
from strategies.digit_differ.core.errors import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_envs(cfg_path: Path) -> None:
    """加载配置文件目录与上一级目录下的 .env/.env.local（不覆盖已有环境变量）。"""
    candidates = [
        cfg_path.parent / ".env",
        cfg_path.parent / ".env.local",
        cfg_path.parent.parent / ".env",
        cfg_path.parent.parent / ".env.local",
    ]
    for env_file in candidates:
        if env_file.exists():
            load_dotenv(env_file, override=False)


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ConfigError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def parse_config(raw_cfg: dict[str, Any] | None) -> BotConfig:
    """校验 raw dict 并返回 BotConfig；任何问题都以 ConfigError 抛出。"""
    if raw_cfg is None:
        raw_cfg = {}
    if not isinstance(raw_cfg, dict):
        raise ConfigError("Config root must be a mapping")
    try:
        return BotConfig.model_validate(raw_cfg)
    except ValidationError as exc:
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
            parts.append(f"{loc}: {err.get('msg')}")
        raise ConfigError("Invalid configuration: " + "; ".join(parts)) from exc


def load_config(path: str, load_env: bool = True, expand_env: bool = True) -> BotConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ConfigError
        YAML 非法、缺失环境变量或 schema 校验失败。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_envs(cfg_path)

    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            raw_cfg = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {cfg_path}: {exc}") from exc

    if expand_env:
        raw_cfg = _expand_env(raw_cfg)
    return parse_config(raw_cfg)
