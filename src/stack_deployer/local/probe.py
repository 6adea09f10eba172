"""Local tool probe used by the prerequisite checks."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Sequence


@dataclass
class ToolAvailability:
    """Which external tools were found on PATH."""

    found: Dict[str, str] = field(default_factory=dict)  # tool -> resolved path
    missing: List[str] = field(default_factory=list)

    def has(self, tool: str) -> bool:
        return tool in self.found


class ToolProbe:
    """Collects information about locally installed tools."""

    def collect(self, tools: Sequence[str]) -> ToolAvailability:
        availability = ToolAvailability()
        for tool in tools:
            location = self._which(tool)
            if location:
                availability.found[tool] = location
            else:
                availability.missing.append(tool)
        return availability

    def is_available(self, tool: str) -> bool:
        return self._which(tool) is not None

    def _which(self, tool: str):
        return shutil.which(tool)
