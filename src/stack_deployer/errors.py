"""Error taxonomy shared by the provisioning and deployment controllers.

Every error is fatal for the invocation that raised it; the CLI maps them all to
exit code 1. Recoverable stages (migrations, model refresh) catch ``DeployerError``
and downgrade it to a warning instead of letting it escape.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .local import LocalCommandResult
    from .provisioning.models import LockRecord


class DeployerError(RuntimeError):
    """Base class for every orchestration failure."""

    exit_code = 1


class PrerequisiteError(DeployerError):
    """Raised when required tools or cluster access are missing."""

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__("Missing prerequisites: " + ", ".join(self.missing))


class BackendProvisioningError(DeployerError):
    """Raised when the remote state store or lock table cannot be created."""

    pass


class BackendUnreachableError(DeployerError):
    """Raised when the provisioning engine cannot bind to its remote backend."""

    pass


class ConfigurationError(DeployerError):
    """Raised when the resource graph fails validation. Lists every violation."""

    def __init__(self, violations: Sequence[str]) -> None:
        self.violations = list(violations)
        lines = [f"Configuration has {len(self.violations)} violation(s):"]
        lines.extend(f"  - {violation}" for violation in self.violations)
        super().__init__("\n".join(lines))


class ApplyError(DeployerError):
    """Raised when applying a plan fails.

    ``partial`` is true when some resources were already created; the caller must
    re-run plan + apply to converge. Never retried automatically.
    """

    def __init__(
        self,
        message: str,
        *,
        partial: bool = False,
        failed_resources: Optional[Sequence[str]] = None,
        applied_resources: Optional[Sequence[str]] = None,
    ) -> None:
        self.partial = partial
        self.failed_resources: List[str] = list(failed_resources or [])
        self.applied_resources: List[str] = list(applied_resources or [])
        super().__init__(message)


class StalePlanError(ApplyError):
    """Raised when the remote state changed after the plan was computed."""

    def __init__(self, planned_serial: Optional[int], current_serial: Optional[int]) -> None:
        self.planned_serial = planned_serial
        self.current_serial = current_serial
        super().__init__(
            f"Plan was computed against state serial {planned_serial} but the "
            f"remote state is now at serial {current_serial}; re-run plan"
        )


class OutputNotFoundError(DeployerError):
    """Raised when an expected infrastructure output is absent."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Infrastructure output not found: {name}")


class ReadinessTimeoutError(DeployerError):
    """Raised when a stateful resource does not become ready in time."""

    def __init__(self, resource: str, elapsed: float) -> None:
        self.resource = resource
        self.elapsed = elapsed
        super().__init__(f"{resource} not ready after {elapsed:.0f}s")


class RolloutTimeoutError(DeployerError):
    """Raised when a service rollout does not complete in time."""

    def __init__(self, service: str, elapsed: float) -> None:
        self.service = service
        self.elapsed = elapsed
        super().__init__(f"Rollout of {service} not complete after {elapsed:.0f}s")


class HealthCheckFailedError(DeployerError):
    """Raised when one or more readiness probes fail."""

    def __init__(self, services: Sequence[str]) -> None:
        self.services = list(services)
        super().__init__("Health check failed for: " + ", ".join(self.services))


class RollbackError(DeployerError):
    """Raised when a component has no previous version to revert to."""

    def __init__(self, component: str, reason: str = "no previous revision") -> None:
        self.component = component
        super().__init__(f"Cannot roll back {component}: {reason}")


class LockHeldError(DeployerError):
    """Raised when the state lock is already held by another operation."""

    def __init__(self, record: "LockRecord", stale: bool = False) -> None:
        self.record = record
        self.stale = stale
        hint = " (stale; use the unlock command after verifying no operation is running)" if stale else ""
        super().__init__(
            f"State lock {record.lock_id} held by {record.who} "
            f"for {record.operation} since {record.created_at}{hint}"
        )


class LockLostError(DeployerError):
    """Raised when a held lock disappeared before release."""

    pass


class LifecycleError(DeployerError):
    """Raised on an illegal provisioning state transition."""

    pass


class CommandError(DeployerError):
    """Raised when a one-shot command exits non-zero."""

    def __init__(self, message: str, result: Optional["LocalCommandResult"] = None) -> None:
        self.result = result
        if result is not None and result.stderr:
            message = f"{message}: {result.stderr.splitlines()[-1]}"
        super().__init__(message)


class MonitoringLoadError(DeployerError):
    """Raised when monitoring configuration cannot be loaded while enabled."""

    pass


class ImageBuildError(DeployerError):
    """Raised when a container image build, tag or push fails."""

    pass
