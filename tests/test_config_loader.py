from pathlib import Path

import pytest

from shared.config.config_loader import load_config, parse_config
from shared.config.schema import BotConfig
from strategies.digit_differ.core.errors import ConfigError

CFG_PATH = Path(__file__).resolve().parents[1] / "config" / "config.yml"


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_expands_env_and_returns_botconfig(monkeypatch: pytest.MonkeyPatch):
    assert CFG_PATH.exists(), "示例配置缺失"
    monkeypatch.setenv("DERIV_TOKEN", "dummy_token")

    cfg = load_config(str(CFG_PATH), load_env=False)
    assert isinstance(cfg, BotConfig)
    assert cfg.connection.token == "dummy_token"
    assert cfg.trading.symbols == ["R_10", "R_25", "R_50", "R_75"]
    assert cfg.analyzer.type == "statistical"
    # analyzer 下的扁平字段被收进 params
    assert cfg.analyzer.params["min_confidence"] == 0.45
    assert cfg.staking.policy == "martingale"
    assert cfg.trading.decimals_for("R_50") == 4


def test_load_config_missing_env_raises(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DERIV_TOKEN", raising=False)

    with pytest.raises(ValueError) as exc:
        load_config(str(CFG_PATH), load_env=False)
    assert "Missing environment variable" in str(exc.value)
    assert isinstance(exc.value, ConfigError)


def test_load_config_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # 先 setenv 再 delenv，保证测试结束后 .env 写入的值被清理
    monkeypatch.setenv("DERIV_TOKEN", "placeholder")
    monkeypatch.delenv("DERIV_TOKEN")
    (tmp_path / ".env").write_text("DERIV_TOKEN=from_dotenv\n", encoding="utf-8")
    path = _write(tmp_path, "connection:\n  token: ${DERIV_TOKEN}\n")

    cfg = load_config(path)
    assert cfg.connection.token == "from_dotenv"


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("does/not/exist.yml")


def test_invalid_yaml(tmp_path: Path):
    path = _write(tmp_path, "trading: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path, load_env=False)


def test_typo_in_section_is_rejected(tmp_path: Path):
    path = _write(tmp_path, "risk:\n  daily_loss_limt: 5\n")
    with pytest.raises(ConfigError) as exc:
        load_config(path, load_env=False)
    assert "risk.daily_loss_limt" in str(exc.value)


def test_defaults_when_empty():
    cfg = parse_config(None)
    assert cfg.trading.symbols == ["R_50"]
    assert cfg.staking.base_stake == 1.0
    assert cfg.risk.max_concurrent_trades == 1


@pytest.mark.parametrize(
    "raw",
    [
        {"staking": {"base_stake": 500, "max_stake": 100}},
        {"trading": {"min_wait_s": 10, "max_wait_s": 5}},
        {"trading": {"symbols": []}},
        {"trading": {"history_length": 50}, "analyzer": {"min_history_length": 100}},
        {"connection": {"reconnect_base_s": 60, "reconnect_cap_s": 30}},
        {"risk": {"max_drawdown_pct": 1.5}},
        {"staking": {"policy": "fibonacci"}},
    ],
)
def test_cross_field_validation(raw):
    with pytest.raises(ConfigError):
        parse_config(raw)


def test_root_must_be_mapping():
    with pytest.raises(ConfigError):
        parse_config(["not", "a", "mapping"])  # type: ignore[arg-type]
