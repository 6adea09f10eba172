"""Operator interaction for irreversible operations (destroy, force-unlock)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console
from rich.prompt import Prompt

logger = logging.getLogger(__name__)


@dataclass
class InteractionRequest:
    """A question put to the operator."""

    question: str
    context: Optional[str] = None
    expected: Optional[str] = None  # 必须逐字输入的确认文本

    def format_prompt(self) -> str:
        """Format the request as a user-friendly prompt."""
        lines = [f"\n⚠️  {self.question}"]
        if self.context:
            lines.append(f"   ℹ️  {self.context}")
        if self.expected:
            lines.append(f"   (type '{self.expected}' to confirm)")
        return "\n".join(lines)


@dataclass
class InteractionResponse:
    """Operator's response to an interaction request."""

    value: str
    cancelled: bool = False

    def confirms(self, expected: str) -> bool:
        """True only for the exact literal; no trimming of case or padding."""
        return not self.cancelled and self.value == expected

    @classmethod
    def cancelled_response(cls) -> "InteractionResponse":
        return cls(value="", cancelled=True)


class UserInteractionHandler(ABC):
    """Abstract base class for handling operator interactions."""

    @abstractmethod
    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """
        Present a request to the operator and get their response.

        Args:
            request: The interaction request to present

        Returns:
            The operator's response
        """
        pass

    def confirm(self, question: str, expected: str = "yes", context: Optional[str] = None) -> bool:
        """Ask for a typed confirmation literal and report whether it matched."""
        request = InteractionRequest(question=question, context=context, expected=expected)
        return self.ask(request).confirms(expected)


class CLIInteractionHandler(UserInteractionHandler):
    """Command-line interaction handler reading from stdin."""

    def __init__(self, use_rich: bool = True) -> None:
        """
        Initialize the CLI handler.

        Args:
            use_rich: Render the prompt with rich; plain print/input otherwise
        """
        self.use_rich = use_rich
        self._console = Console() if use_rich else None

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        try:
            if self._console is not None:
                self._console.print(request.format_prompt(), markup=False)
                return InteractionResponse(value=Prompt.ask("   >", console=self._console))
            print(request.format_prompt())
            return InteractionResponse(value=input("   > "))
        except KeyboardInterrupt:
            print("\n   (cancelled)")
            return InteractionResponse.cancelled_response()
        except EOFError:
            return InteractionResponse.cancelled_response()


class ScriptedResponseHandler(UserInteractionHandler):
    """Answers from a fixed list, for automation and tests."""

    def __init__(self, answers: List[str]) -> None:
        self.answers = list(answers)
        self.asked: List[InteractionRequest] = []

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        self.asked.append(request)
        if not self.answers:
            logger.debug("No scripted answer left for: %s", request.question)
            return InteractionResponse.cancelled_response()
        return InteractionResponse(value=self.answers.pop(0))
