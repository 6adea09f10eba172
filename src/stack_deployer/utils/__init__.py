"""Shared helpers: logging setup and condition polling."""

from .logging import SUCCESS, get_logger, log_success
from .polling import ConditionTimeout, await_condition

__all__ = ["SUCCESS", "get_logger", "log_success", "ConditionTimeout", "await_condition"]
