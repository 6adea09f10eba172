"""Data models for the provisioning lifecycle."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from ..config import Environment, ProvisioningConfig
from ..errors import OutputNotFoundError

MASK = "***"


class ProvisioningState(Enum):
    """Provisioning lifecycle states."""
    UNINITIALIZED = "uninitialized"
    BACKEND_READY = "backend_ready"
    INITIALIZED = "initialized"
    VALIDATED = "validated"
    PLANNED = "planned"
    APPLIED = "applied"
    OUTPUTS_EXTRACTED = "outputs_extracted"
    BACKEND_FAILED = "backend_failed"
    APPLY_FAILED = "apply_failed"

    @property
    def terminal_failure(self) -> bool:
        return self in (ProvisioningState.BACKEND_FAILED, ProvisioningState.APPLY_FAILED)


_S = ProvisioningState

ALLOWED_TRANSITIONS: Dict[ProvisioningState, Set[ProvisioningState]] = {
    _S.UNINITIALIZED: {_S.BACKEND_READY, _S.BACKEND_FAILED, _S.INITIALIZED},
    _S.BACKEND_READY: {_S.INITIALIZED},
    _S.INITIALIZED: {_S.VALIDATED, _S.OUTPUTS_EXTRACTED},
    _S.VALIDATED: {_S.PLANNED},
    _S.PLANNED: {_S.APPLIED, _S.APPLY_FAILED, _S.PLANNED},
    # A plan without changes is never applied; outputs are read straight away.
    _S.APPLIED: {_S.OUTPUTS_EXTRACTED, _S.PLANNED},
    _S.OUTPUTS_EXTRACTED: {_S.PLANNED, _S.OUTPUTS_EXTRACTED},
    _S.BACKEND_FAILED: set(),
    _S.APPLY_FAILED: set(),
}


@dataclass(frozen=True)
class StateHandle:
    """Explicit reference to one environment's remote state and its lock."""

    environment: str
    bucket: str
    key: str
    lock_table: str
    region: str

    @property
    def lock_id(self) -> str:
        # Terraform locks "<bucket>/<key>" itself; the orchestrator uses its own record
        return f"{self.bucket}/{self.key}.orchestrator"

    def backend_config(self) -> Dict[str, str]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "region": self.region,
            "dynamodb_table": self.lock_table,
            "encrypt": "true",
        }

    @classmethod
    def for_environment(cls, environment: Environment, config: ProvisioningConfig) -> "StateHandle":
        return cls(
            environment=environment.name,
            bucket=config.state_bucket,
            key=config.state_key.format(environment=environment.name),
            lock_table=config.lock_table,
            region=environment.region,
        )


@dataclass(frozen=True)
class LockRecord:
    """The single mutual-exclusion token held during mutating operations."""

    lock_id: str
    owner: str
    operation: str
    who: str
    created_at: str

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        created = datetime.fromisoformat(self.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()

    def is_stale(self, stale_after: float, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) > stale_after

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, payload: str) -> "LockRecord":
        return cls(**json.loads(payload))


@dataclass(frozen=True)
class StateVersion:
    """Identity of a remote state snapshot."""

    serial: Optional[int]
    lineage: Optional[str]

    @classmethod
    def from_state_json(cls, raw: str) -> "StateVersion":
        if not raw.strip():
            return cls(serial=None, lineage=None)
        data = json.loads(raw)
        return cls(serial=data.get("serial"), lineage=data.get("lineage"))


@dataclass(frozen=True)
class ProvisioningPlan:
    """An immutable, point-in-time diff produced by ``plan`` and consumed once by ``apply``."""

    path: Path
    environment: str
    state_version: StateVersion
    has_changes: bool
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class ApplyEvents:
    """Per-resource outcome parsed from ``terraform apply -json``."""

    applied: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class OutputValue:
    value: Any
    sensitive: bool = False

    def display(self) -> str:
        if self.sensitive:
            return MASK
        if isinstance(self.value, (dict, list)):
            return json.dumps(self.value)
        return str(self.value)


class InfrastructureOutputs:
    """Named outputs of the applied state; sensitive values never render in cleartext."""

    def __init__(self, values: Dict[str, OutputValue]) -> None:
        self._values = dict(values)

    @classmethod
    def from_terraform_json(
        cls, raw: str, extra_sensitive: Iterable[str] = ()
    ) -> "InfrastructureOutputs":
        data = json.loads(raw) if raw.strip() else {}
        forced = set(extra_sensitive)
        values = {
            name: OutputValue(
                value=entry.get("value"),
                sensitive=bool(entry.get("sensitive")) or name in forced,
            )
            for name, entry in data.items()
        }
        return cls(values)

    def names(self) -> List[str]:
        return sorted(self._values)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str) -> Any:
        """Return the raw value. Raises OutputNotFoundError when absent."""
        if name not in self._values:
            raise OutputNotFoundError(name)
        return self._values[name].value

    def is_sensitive(self, name: str) -> bool:
        return name in self._values and self._values[name].sensitive

    def require(self, names: Iterable[str]) -> None:
        for name in names:
            if name not in self._values:
                raise OutputNotFoundError(name)

    def public_values(self) -> Dict[str, str]:
        return {
            name: entry.display()
            for name, entry in self._values.items()
            if not entry.sensitive
        }

    def sensitive_values(self) -> Dict[str, str]:
        return {
            name: entry.value if isinstance(entry.value, str) else json.dumps(entry.value)
            for name, entry in self._values.items()
            if entry.sensitive
        }

    def masked(self) -> Dict[str, str]:
        return {name: entry.display() for name, entry in self._values.items()}

    def __repr__(self) -> str:
        return f"InfrastructureOutputs({self.masked()!r})"
