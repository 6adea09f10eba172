"""Local execution module: runs the external tools on this machine."""

from .session import LocalSession, LocalCommandResult
from .probe import ToolProbe, ToolAvailability

__all__ = ["LocalSession", "LocalCommandResult", "ToolProbe", "ToolAvailability"]
