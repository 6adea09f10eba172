"""Logging helpers."""

from __future__ import annotations

import logging
from typing import Optional

# 介于 INFO 与 WARNING 之间，用于阶段完成的状态行
SUCCESS = 25

_LOGGING_CONFIGURED = False


def get_logger(name: Optional[str] = None) -> logging.Logger:
    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        logging.addLevelName(SUCCESS, "SUCCESS")
        logging.basicConfig(
            level=logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        )
        _LOGGING_CONFIGURED = True
    return logging.getLogger(name)


def log_success(logger: logging.Logger, message: str, *args) -> None:
    """Emit a status line at the SUCCESS level."""
    logger.log(SUCCESS, message, *args)
