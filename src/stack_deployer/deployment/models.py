"""Data models for the deployment lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class Severity(Enum):
    """How a stage failure affects the run."""
    FATAL = "fatal"               # 中止本次调用
    RECOVERABLE = "recoverable"   # 降级为警告，继续执行


class StageStatus(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeSpec:
    """An HTTP endpoint checked inside the service's container."""

    path: str = "/"
    port: int = 80

    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"http://localhost:{self.port}{path}"


@dataclass(frozen=True)
class WorkloadDescriptor:
    """Desired state of one service as declared in configuration and its manifest."""

    name: str
    manifest: str
    kind: str = "Deployment"
    selector: str = ""
    replicas: int = 1
    image: Optional[str] = None
    env: List[str] = field(default_factory=list)
    readiness: Optional[ProbeSpec] = None
    liveness: Optional[ProbeSpec] = None
    health_check: bool = True

    @property
    def resource(self) -> str:
        return f"{self.kind.lower()}/{self.name}"

    @property
    def label_selector(self) -> str:
        return self.selector or f"app={self.name}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkloadDescriptor":
        readiness = data.get("readiness")
        liveness = data.get("liveness")
        return cls(
            name=data["name"],
            manifest=data.get("manifest", f"{data['name']}.yaml"),
            kind=data.get("kind", "Deployment"),
            selector=data.get("selector", ""),
            replicas=int(data.get("replicas", 1)),
            image=data.get("image"),
            env=list(data.get("env", []) or []),
            readiness=ProbeSpec(**readiness) if readiness else None,
            liveness=ProbeSpec(**liveness) if liveness else None,
            health_check=bool(data.get("health_check", True)),
        )


@dataclass
class Stage:
    """One row of the deploy pipeline."""

    name: str
    severity: Severity
    action: Callable[[], Any]


@dataclass
class StageOutcome:
    name: str
    status: StageStatus
    message: str = ""


@dataclass
class ServiceHealth:
    service: str
    healthy: bool
    detail: str = ""


@dataclass
class HealthReport:
    """Transient result of one round of readiness probes."""

    results: List[ServiceHealth] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [result.service for result in self.results if not result.healthy]

    @property
    def healthy(self) -> bool:
        return not self.failed


@dataclass
class ServiceStatus:
    name: str
    ready: int
    desired: int
    revision: Optional[int] = None
    declared: Optional[int] = None    # 配置中声明的副本数
    image: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.desired > 0 and self.ready >= self.desired


@dataclass
class DeploymentReport:
    """Final state printed at the end of a deploy and by ``info``."""

    environment: str
    namespace: str
    services: List[ServiceStatus] = field(default_factory=list)
    external_address: Optional[str] = None
    reachable: Optional[bool] = None
    stages: List[StageOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> List[StageOutcome]:
        return [stage for stage in self.stages if stage.status == StageStatus.WARNING]

    def to_lines(self) -> List[str]:
        lines = [
            "Deployment Information:",
            "================================",
            f"Environment: {self.environment}",
            f"Namespace:   {self.namespace}",
            "",
            "Services:",
        ]
        for service in self.services:
            marker = "✅" if service.is_ready else "⏳"
            revision = f" (revision {service.revision})" if service.revision is not None else ""
            declared = ""
            if service.declared is not None and service.declared != service.desired:
                declared = f" (declared {service.declared})"
            lines.append(
                f"  {marker} {service.name}: {service.ready}/{service.desired} ready{declared}{revision}"
            )
            if service.image:
                lines.append(f"      image: {service.image}")
        lines.append("")
        lines.append("Access URLs:")
        if self.external_address:
            suffix = ""
            if self.reachable is not None:
                suffix = " (reachable)" if self.reachable else " (not responding yet)"
            lines.append(f"  Application: http://{self.external_address}{suffix}")
        else:
            lines.append("  Application: Check ingress configuration")
        lines.extend(
            [
                "  Backend API: /api",
                "  ML Service: /ml-api",
                "  Monitoring: /monitoring (if enabled)",
            ]
        )
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            for stage in self.warnings:
                lines.append(f"  ⚠️  {stage.name}: {stage.message}")
        return lines
