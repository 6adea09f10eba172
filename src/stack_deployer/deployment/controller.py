"""Deployment lifecycle controller.

Rolls one environment's workloads forward in dependency order:
namespace → data store → application services → ingress → one-shot commands →
monitoring → health checks → cleanup → report. The pipeline is a table of
:class:`Stage` rows; only RECOVERABLE rows may fail without aborting the run.
"""

from __future__ import annotations

import dataclasses
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import AppConfig, Environment, OneShotCommand
from ..errors import (
    CommandError,
    ConfigurationError,
    DeployerError,
    HealthCheckFailedError,
    MonitoringLoadError,
    PrerequisiteError,
    ReadinessTimeoutError,
    RollbackError,
    RolloutTimeoutError,
)
from ..local import LocalSession, ToolProbe
from ..provisioning.models import InfrastructureOutputs
from ..utils.logging import get_logger, log_success
from ..utils.polling import ConditionTimeout, await_condition
from .kube import REVISION_ANNOTATION, KubeClient, older_than
from .models import (
    DeploymentReport,
    HealthReport,
    ProbeSpec,
    ServiceHealth,
    ServiceStatus,
    Severity,
    Stage,
    StageOutcome,
    StageStatus,
    WorkloadDescriptor,
)

logger = get_logger(__name__)

ROLLED_BACK_ANNOTATION = "stack-deployer/rolled-back-from"
# 每个 Deployment 保留最近的两个旧 ReplicaSet，保证 rollback 仍有目标
KEEP_SUPERSEDED = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentController:
    """Brings the running workloads of one environment to the declared versions."""

    def __init__(
        self,
        config: AppConfig,
        environment: Environment,
        *,
        kube: Optional[KubeClient] = None,
        session: Optional[LocalSession] = None,
        probe: Optional[ToolProbe] = None,
        http: Optional[requests.Session] = None,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.settings = config.deployment
        self.environment = environment
        self.manifest_dir = Path(self.settings.manifest_dir)
        self.monitoring_dir = Path(self.settings.monitoring_dir)

        self.kube = kube or KubeClient(
            session or LocalSession(), environment.namespace, timeout=self.settings.rollout_timeout
        )
        self.probe = probe or ToolProbe()
        self.http = http or requests.Session()
        self._now = now
        self._clock = clock
        self._sleep = sleep

        self.data_store = WorkloadDescriptor.from_dict(self.settings.data_store)
        self.services = [WorkloadDescriptor.from_dict(item) for item in self.settings.services]

    # ------------------------------------------------------------------ lookup

    @property
    def component_names(self) -> List[str]:
        return [service.name for service in self.services]

    def service(self, name: str) -> WorkloadDescriptor:
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(name)

    def _wait(self, probe: Callable[[], bool], timeout: float, describe: str, interval: Optional[float] = None) -> float:
        return await_condition(
            probe,
            interval=interval or self.settings.poll_interval,
            timeout=timeout,
            describe=describe,
            clock=self._clock,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------ pipeline

    def stages(self, outputs: Optional[InfrastructureOutputs] = None) -> List[Stage]:
        return [
            Stage("prerequisites", Severity.FATAL, self.check_prerequisites),
            Stage("infrastructure-bindings", Severity.FATAL, lambda: self.bind_infrastructure(outputs)),
            Stage("data-store", Severity.FATAL, self.deploy_data_store),
            Stage("applications", Severity.FATAL, self.deploy_applications),
            Stage("ingress", Severity.FATAL, self.deploy_ingress),
            Stage("migrations", Severity.RECOVERABLE, self.run_migrations),
            Stage("model-refresh", Severity.RECOVERABLE, self.refresh_models),
            Stage("monitoring", Severity.FATAL, self.load_monitoring),
            Stage("health-checks", Severity.FATAL, self.health_check),
            Stage("cleanup", Severity.FATAL, self.cleanup),
        ]

    def run_stages(self, stages: List[Stage]) -> List[StageOutcome]:
        """Run stages in order; a FATAL failure propagates, a RECOVERABLE one becomes a warning."""
        outcomes: List[StageOutcome] = []
        for stage in stages:
            try:
                result = stage.action()
            except DeployerError as exc:
                if stage.severity == Severity.RECOVERABLE:
                    logger.warning("%s failed, continuing: %s", stage.name, exc)
                    outcomes.append(StageOutcome(stage.name, StageStatus.WARNING, str(exc)))
                    continue
                logger.error("%s failed: %s", stage.name, exc)
                raise
            if isinstance(result, StageOutcome):
                outcomes.append(dataclasses.replace(result, name=stage.name))
            else:
                outcomes.append(StageOutcome(stage.name, StageStatus.SUCCESS))
        return outcomes

    def deploy(self, outputs: Optional[InfrastructureOutputs] = None) -> DeploymentReport:
        logger.info("Starting deployment...")
        logger.info("Environment: %s", self.environment.name)
        logger.info("Namespace: %s", self.environment.namespace)

        outcomes = self.run_stages(self.stages(outputs))
        report = self.report()
        report.stages = outcomes
        for line in report.to_lines():
            print(line)
        log_success(logger, "Deployment completed successfully!")
        return report

    # ------------------------------------------------------------------ stages

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")
        availability = self.probe.collect(self.settings.required_tools)
        missing = [f"{tool} (not installed)" for tool in availability.missing]
        if availability.has("kubectl") and not self.kube.cluster_reachable():
            missing.append("Kubernetes cluster access (check your kubectl configuration)")
        if missing:
            raise PrerequisiteError(missing)
        log_success(logger, "Prerequisites check passed")

    def bind_infrastructure(self, outputs: Optional[InfrastructureOutputs]) -> Optional[StageOutcome]:
        """Publish infrastructure outputs into the namespace and check every service's env.

        Public outputs go to a ConfigMap, sensitive ones to a Secret; both objects are
        applied on stdin so their values never reach a log line.
        """
        if outputs is None or not self.settings.consume_infra_outputs:
            logger.info("No infrastructure outputs supplied; skipping bindings")
            return StageOutcome("", StageStatus.SKIPPED, "no infrastructure outputs")

        logger.info("Binding infrastructure outputs...")
        public: Dict[str, str] = dict(self.environment.variables)
        secret: Dict[str, str] = {}
        sensitive = outputs.sensitive_values()
        for env_name, output_name in self.settings.output_bindings.items():
            if output_name not in outputs:
                logger.debug("Output %s not present; %s left unbound", output_name, env_name)
                continue
            if outputs.is_sensitive(output_name):
                secret[env_name] = sensitive[output_name]
            else:
                public[env_name] = outputs.public_values()[output_name]

        violations = [
            f"{service.name}: {name} is not bound"
            for service in self.services
            for name in service.env
            if name not in public and name not in secret
        ]
        if violations:
            raise ConfigurationError(violations)

        metadata = {"namespace": self.environment.namespace, "labels": {"app.kubernetes.io/managed-by": "stack-deployer"}}
        self.kube.apply_object(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": self.settings.infra_configmap_name, **metadata},
                "data": public,
            }
        )
        self.kube.apply_object(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "type": "Opaque",
                "metadata": {"name": self.settings.infra_secret_name, **metadata},
                "stringData": secret,
            }
        )
        log_success(
            logger,
            "Bound %d public and %d sensitive value(s)", len(public), len(secret)
        )
        return None

    def deploy_data_store(self) -> float:
        logger.info("Deploying infrastructure components...")
        logger.info("Creating namespace...")
        self.kube.apply_file(self.manifest_dir / self.settings.namespace_manifest)

        logger.info("Deploying %s...", self.data_store.name)
        self.kube.apply_file(self.manifest_dir / self.data_store.manifest)

        logger.info("Waiting for %s to be ready...", self.data_store.name)
        try:
            elapsed = self._wait(
                lambda: self.kube.pods_ready(self.data_store.label_selector),
                self.settings.readiness_timeout,
                f"{self.data_store.name} readiness",
            )
        except ConditionTimeout as exc:
            raise ReadinessTimeoutError("data-store", exc.elapsed) from exc
        log_success(logger, "%s ready after %.0fs", self.data_store.name, elapsed)
        self._check_image(self.data_store, self.kube.container_images(self.data_store))
        return elapsed

    def deploy_applications(self) -> None:
        logger.info("Deploying application components...")
        for service in self.services:
            logger.info("Deploying %s...", service.name)
            self.kube.apply_file(self.manifest_dir / service.manifest)
            # 新版本发布后，旧的回滚记录不再有效
            if self.kube.get_annotation(service, ROLLED_BACK_ANNOTATION) is not None:
                self.kube.annotate(service, ROLLED_BACK_ANNOTATION, None)

        logger.info("Waiting for deployments to be ready...")
        self.wait_for_rollouts(self.services)
        log_success(logger, "All deployments are ready")

    def wait_for_rollouts(self, services: List[WorkloadDescriptor]) -> Dict[str, float]:
        """Wait for every rollout concurrently; the first failure in declared order is raised."""
        if not services:
            return {}
        with ThreadPoolExecutor(max_workers=len(services)) as executor:
            futures = {service.name: executor.submit(self._wait_for_rollout, service) for service in services}
        errors: List[DeployerError] = []
        elapsed: Dict[str, float] = {}
        for name, future in futures.items():
            error = future.exception()
            if error is None:
                elapsed[name] = future.result()
            elif isinstance(error, DeployerError):
                errors.append(error)
            else:
                raise error
        if errors:
            raise errors[0]
        return elapsed

    def _wait_for_rollout(self, service: WorkloadDescriptor) -> float:
        logger.info("Waiting for %s deployment...", service.name)
        try:
            elapsed = self._wait(
                lambda: self.kube.rollout_complete(service),
                self.settings.rollout_timeout,
                f"{service.name} rollout",
            )
        except ConditionTimeout as exc:
            raise RolloutTimeoutError(service.name, exc.elapsed) from exc
        log_success(logger, "%s rolled out in %.0fs", service.name, elapsed)
        return elapsed

    def deploy_ingress(self) -> None:
        logger.info("Deploying ingress...")
        self.kube.apply_file(self.manifest_dir / self.settings.ingress_manifest)
        log_success(logger, "Application components deployed successfully")

    def run_migrations(self) -> Optional[StageOutcome]:
        return self._run_one_shot(self.settings.migration, "Running database migrations...")

    def refresh_models(self) -> Optional[StageOutcome]:
        return self._run_one_shot(self.settings.model_refresh, "Training ML models...")

    def _run_one_shot(self, command: Optional[OneShotCommand], banner: str) -> Optional[StageOutcome]:
        if command is None:
            return StageOutcome("", StageStatus.SKIPPED, "not configured")
        logger.info(banner)
        try:
            target = self.service(command.service)
        except KeyError:
            raise CommandError(f"{command.description}: unknown service {command.service}") from None

        pod = self.kube.find_ready_pod(target.label_selector)
        if pod is None:
            raise CommandError(f"No {command.service} pod found for {command.description}")

        logger.info("Running %s on pod: %s", command.description, pod)
        result = self.kube.exec(pod, command.command)
        if not result.ok:
            raise CommandError(f"{command.description} failed on {pod}", result)
        log_success(logger, "%s completed", command.description.capitalize())
        return None

    def load_monitoring(self) -> Optional[StageOutcome]:
        if not self.settings.monitoring_enabled:
            logger.warning("Monitoring deployment skipped")
            return StageOutcome("", StageStatus.WARNING, "monitoring disabled")

        logger.info("Deploying monitoring stack...")
        for name, filename in self.settings.monitoring_configmaps.items():
            path = self.monitoring_dir / filename
            if not path.is_file():
                raise MonitoringLoadError(f"Monitoring file not found: {path}")
            try:
                self.kube.apply_configmap_from_files(name, {filename: path})
            except CommandError as exc:
                raise MonitoringLoadError(f"Could not load {name}: {exc}") from exc
        log_success(logger, "Monitoring stack deployed")
        return None

    def health_check(self) -> HealthReport:
        """Probe every checked service from inside its own pod; all failures are reported together."""
        logger.info("Running health checks...")
        report = HealthReport()
        for service in self.services:
            if not service.health_check or not _endpoints(service):
                continue
            logger.info("Checking %s health...", service.name)
            try:
                self._wait(
                    lambda service=service: self._probe_service(service),
                    self.settings.health_timeout,
                    f"{service.name} health",
                    interval=self.settings.health_interval,
                )
            except ConditionTimeout as exc:
                logger.error("%s health check failed", service.name)
                detail = str(exc.last_error) if exc.last_error else f"no success within {exc.elapsed:.0f}s"
                report.results.append(ServiceHealth(service.name, False, detail))
                continue
            log_success(logger, "%s health check passed", service.name)
            report.results.append(ServiceHealth(service.name, True))

        if not report.healthy:
            raise HealthCheckFailedError(report.failed)
        log_success(logger, "All health checks passed")
        return report

    def _probe_service(self, service: WorkloadDescriptor) -> bool:
        """Liveness first, then readiness; both must answer from the same pod."""
        pod = self.kube.find_ready_pod(service.label_selector)
        if pod is None:
            return False
        for endpoint in _endpoints(service):
            result = self.kube.exec(pod, ["curl", "-fsS", "-o", "/dev/null", endpoint.url()], timeout=30)
            if not result.ok:
                return False
        return True

    def cleanup(self) -> Dict[str, List[str]]:
        """Orphan-delete superseded ReplicaSets and completed Jobs older than the retention window."""
        logger.info("Cleaning up old resources...")
        cutoff = self._now() - timedelta(hours=self.settings.cleanup_retention_hours)

        replica_sets = self._superseded_replica_sets(cutoff)
        self.kube.delete_orphaning("replicasets", replica_sets)

        jobs = [
            job["metadata"]["name"]
            for job in self.kube.list_items("jobs")
            if (job.get("status") or {}).get("succeeded", 0) >= 1
            and older_than(job, cutoff, ("status", "completionTime"))
        ]
        self.kube.delete_orphaning("jobs", jobs)

        log_success(
            logger,
            "Cleanup completed (%d replica set(s), %d job(s))", len(replica_sets), len(jobs)
        )
        return {"replicasets": replica_sets, "jobs": jobs}

    def _superseded_replica_sets(self, cutoff: datetime) -> List[str]:
        by_owner: Dict[str, List[Dict[str, Any]]] = {}
        for replica_set in self.kube.list_items("replicasets"):
            owners = (replica_set.get("metadata") or {}).get("ownerReferences") or []
            owner = next((ref["name"] for ref in owners if ref.get("kind") == "Deployment"), None)
            if owner is not None:
                by_owner.setdefault(owner, []).append(replica_set)

        doomed = []
        for items in by_owner.values():
            items.sort(key=_revision_of, reverse=True)
            superseded = [
                item for item in items[1:]
                if (item.get("spec") or {}).get("replicas", 0) == 0
            ]
            for item in superseded[KEEP_SUPERSEDED:]:
                if older_than(item, cutoff, ("metadata", "creationTimestamp")):
                    doomed.append(item["metadata"]["name"])
        return doomed

    # ------------------------------------------------------------------ rollback

    def rollback(self, component: str = "all") -> Dict[str, int]:
        """Revert ``component`` (or every service) one version back.

        Revisions already rolled back from are skipped, so repeated rollbacks walk
        further into the history instead of toggling between two versions.
        Targets are resolved for every service before any of them is touched.
        """
        if component == "all":
            services = list(self.services)
        else:
            try:
                services = [self.service(component)]
            except KeyError:
                raise RollbackError(component, "unknown component") from None

        logger.warning("Rolling back %s...", component)
        plan = [(service, *self._rollback_target(service)) for service in services]

        reverted: Dict[str, int] = {}
        for service, current, target in plan:
            logger.info("Reverting %s from revision %d to %d", service.name, current, target)
            history = self._rolled_back_from(service)
            self.kube.rollout_undo(service, target)
            self.kube.annotate(
                service,
                ROLLED_BACK_ANNOTATION,
                ",".join(str(revision) for revision in sorted(history | {current})),
            )
            reverted[service.name] = target

        self.wait_for_rollouts(services)
        log_success(logger, "Rollback completed for %s", component)
        return reverted

    def _rolled_back_from(self, service: WorkloadDescriptor) -> set:
        raw = self.kube.get_annotation(service, ROLLED_BACK_ANNOTATION) or ""
        return {int(part) for part in raw.split(",") if part.strip()}

    def _rollback_target(self, service: WorkloadDescriptor):
        current = self.kube.current_revision(service)
        skipped = self._rolled_back_from(service)
        candidates = [
            revision for revision in self.kube.revisions(service)
            if revision < current and revision not in skipped
        ]
        if not candidates:
            raise RollbackError(service.name)
        return current, max(candidates)

    # ------------------------------------------------------------------ reporting

    def report(self) -> DeploymentReport:
        statuses = []
        for service in self.services:
            ready, desired = self.kube.replica_counts(service)
            images = self.kube.container_images(service)
            self._check_image(service, images)
            statuses.append(
                ServiceStatus(
                    service.name,
                    ready,
                    desired,
                    self.kube.current_revision(service),
                    declared=service.replicas,
                    image=images[0] if images else None,
                )
            )
        address = self.kube.ingress_address(self.settings.ingress_name)
        reachable = None
        if address and self.settings.probe_external_address:
            reachable = self._reachable(address)
        return DeploymentReport(
            environment=self.environment.name,
            namespace=self.environment.namespace,
            services=statuses,
            external_address=address,
            reachable=reachable,
        )

    def _check_image(self, descriptor: WorkloadDescriptor, images: List[str]) -> bool:
        """Warn when the running containers do not include the declared image."""
        if not descriptor.image or descriptor.image in images:
            return True
        logger.warning(
            "%s is running %s, declared image is %s",
            descriptor.name,
            ", ".join(images) or "no containers",
            descriptor.image,
        )
        return False

    def _reachable(self, address: str) -> bool:
        try:
            response = self.http.get(f"http://{address}/", timeout=5)
        except requests.RequestException as exc:
            logger.debug("External address %s not reachable: %s", address, exc)
            return False
        return response.status_code < 500

    def info(self) -> DeploymentReport:
        """Read-only snapshot of services, pods and ingress."""
        logger.info("Deployment Information:")
        print("================================")
        for title, kind, wide in (("Services", "services", False), ("Pods", "pods", True), ("Ingress", "ingress", False)):
            print(f"{title}:")
            print(self.kube.table(kind, wide=wide))
        report = self.report()
        for line in report.to_lines():
            print(line)
        return report


def _revision_of(replica_set: Dict[str, Any]) -> int:
    annotations = (replica_set.get("metadata") or {}).get("annotations") or {}
    return int(annotations.get(REVISION_ANNOTATION, 0))


def _endpoints(service: WorkloadDescriptor) -> List[ProbeSpec]:
    return [probe for probe in (service.liveness, service.readiness) if probe is not None]
