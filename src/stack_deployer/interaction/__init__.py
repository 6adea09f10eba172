"""Operator interaction module."""

from .handler import (
    InteractionRequest,
    InteractionResponse,
    UserInteractionHandler,
    CLIInteractionHandler,
    ScriptedResponseHandler,
)

__all__ = [
    "InteractionRequest",
    "InteractionResponse",
    "UserInteractionHandler",
    "CLIInteractionHandler",
    "ScriptedResponseHandler",
]
