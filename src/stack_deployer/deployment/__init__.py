"""Deployment lifecycle: ordered workload rollout, health checks, rollback and cleanup."""

from .models import (
    Severity,
    StageStatus,
    ProbeSpec,
    WorkloadDescriptor,
    Stage,
    StageOutcome,
    ServiceHealth,
    HealthReport,
    ServiceStatus,
    DeploymentReport,
)
from .kube import KubeClient
from .controller import DeploymentController, ROLLED_BACK_ANNOTATION

__all__ = [
    "Severity",
    "StageStatus",
    "ProbeSpec",
    "WorkloadDescriptor",
    "Stage",
    "StageOutcome",
    "ServiceHealth",
    "HealthReport",
    "ServiceStatus",
    "DeploymentReport",
    "KubeClient",
    "DeploymentController",
    "ROLLED_BACK_ANNOTATION",
]
