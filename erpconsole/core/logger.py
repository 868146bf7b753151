from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler


def level_from_name(name: str, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name or "").upper())
    return value if isinstance(value, int) else default


def setup_logging(log_dir: str = "logs", *, level: int = logging.INFO) -> logging.Logger:
    """
    Configures the "erpconsole" logger: rotating file under `log_dir` plus
    warnings and errors on stderr.
    """
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger("erpconsole")
    logger.setLevel(level)
    logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        h = RotatingFileHandler(os.path.join(log_dir, "erpconsole.log"), maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        h.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(h)

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        console.setLevel(logging.WARNING)
        logger.addHandler(console)

    return logger
