import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(level: str | int = "INFO", log_file: str | None = None, rich: bool = True) -> logging.Logger:
    """配置 root logger（控制台 + 可选滚动文件），重复调用不会叠加 handler。"""
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, "_digit_bot", False):
            root.removeHandler(handler)
            handler.close()

    if rich:
        ch: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
        ch.setFormatter(logging.Formatter("%(name)s - %(message)s"))
    else:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(_FORMAT))
    ch._digit_bot = True  # type: ignore[attr-defined]
    root.addHandler(ch)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        fh.setFormatter(logging.Formatter(_FORMAT))
        fh._digit_bot = True  # type: ignore[attr-defined]
        root.addHandler(fh)

    return root
