"""Provisioning lifecycle controller.

Drives the provisioning engine through backend → init → validate → plan → apply →
outputs for one environment. Mutating operations run under :class:`StateLock`;
partial apply failures are reported, never remediated.
"""

from __future__ import annotations

import getpass
import os
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple

from ..config import AppConfig, Environment
from ..errors import (
    ApplyError,
    BackendProvisioningError,
    CommandError,
    ConfigurationError,
    LifecycleError,
    PrerequisiteError,
    StalePlanError,
)
from ..interaction import CLIInteractionHandler, UserInteractionHandler
from ..local import LocalSession, ToolProbe
from ..paths import LOCAL_STATE_FILE_NAME, PLAN_FILE_NAME, TFVARS_FILE_NAME, backup_dir_for
from ..utils.logging import get_logger, log_success
from .backend import StateBackend
from .cluster import ClusterBootstrapper
from .lock import DynamoDBLockStore, LockStore, StateLock
from .models import (
    ALLOWED_TRANSITIONS,
    ApplyEvents,
    InfrastructureOutputs,
    LockRecord,
    ProvisioningPlan,
    ProvisioningState,
    StateHandle,
)
from .terraform import TerraformRunner

logger = get_logger(__name__)


class ProvisioningController:
    """Makes the declared infrastructure match one environment, once per invocation."""

    def __init__(
        self,
        config: AppConfig,
        environment: Environment,
        *,
        session: Optional[LocalSession] = None,
        terraform: Optional[TerraformRunner] = None,
        backend: Optional[StateBackend] = None,
        lock_store: Optional[LockStore] = None,
        probe: Optional[ToolProbe] = None,
        bootstrapper: Optional[ClusterBootstrapper] = None,
        interaction_handler: Optional[UserInteractionHandler] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.settings = config.provisioning
        self.environment = environment
        self.handle = StateHandle.for_environment(environment, self.settings)
        self.terraform_dir = Path(self.settings.terraform_dir)

        self.session = session or LocalSession(working_dir=str(self.terraform_dir))
        self.terraform = terraform or TerraformRunner(
            self.session, self.terraform_dir, timeout=self.settings.command_timeout
        )
        self.backend = backend or StateBackend(self.session)
        self.lock_store = lock_store or DynamoDBLockStore(
            self.session, self.handle.lock_table, self.handle.region
        )
        self.probe = probe or ToolProbe()
        self.bootstrapper = bootstrapper or ClusterBootstrapper(self.session, self.settings, self.probe)
        self.interaction_handler = interaction_handler or CLIInteractionHandler()
        self._now = now

        self.state = ProvisioningState.UNINITIALIZED
        self._applied_plans: Set[str] = set()

    # ------------------------------------------------------------------ state

    def _transition(self, target: ProvisioningState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise LifecycleError(
                f"Cannot move from {self.state.value} to {target.value}"
            )
        logger.debug("Provisioning state %s -> %s", self.state.value, target.value)
        self.state = target

    def _lock(self, operation: str) -> StateLock:
        return StateLock(
            self.lock_store, self.handle, operation, stale_after=self.settings.lock_stale_after
        )

    # ------------------------------------------------------------- operations

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")
        availability = self.probe.collect(self.settings.required_tools)
        missing = [f"{tool} (not installed)" for tool in availability.missing]
        if availability.has("aws") and not self.backend.caller_identity_ok():
            missing.append("AWS credentials (run 'aws configure')")
        if missing:
            raise PrerequisiteError(missing)
        log_success(logger, "Prerequisites check passed")

    def ensure_backend(self) -> None:
        logger.info("Setting up Terraform backend...")
        try:
            self.backend.ensure(self.handle)
        except BackendProvisioningError:
            self._transition(ProvisioningState.BACKEND_FAILED)
            raise
        self._transition(ProvisioningState.BACKEND_READY)

    def init(self) -> None:
        logger.info("Initializing Terraform...")
        self.terraform.init(self.handle)
        self._transition(ProvisioningState.INITIALIZED)
        log_success(logger, "Terraform initialized")

    def validate(self) -> None:
        logger.info("Validating Terraform configuration...")
        violations = self.terraform.validate()
        if violations:
            raise ConfigurationError(violations)
        if not self.terraform.fmt():
            logger.warning("terraform fmt could not format the configuration")
        self._transition(ProvisioningState.VALIDATED)
        log_success(logger, "Terraform configuration validated")

    def plan(self) -> ProvisioningPlan:
        logger.info("Planning infrastructure changes...")
        var_file = self._ensure_tfvars()
        plan_path = self.terraform_dir / PLAN_FILE_NAME
        with self._lock("plan"):
            version = self.terraform.state_version()
            has_changes = self.terraform.plan(plan_path, var_file=var_file)
        plan = ProvisioningPlan(
            path=plan_path,
            environment=self.environment.name,
            state_version=version,
            has_changes=has_changes,
        )
        self._transition(ProvisioningState.PLANNED)
        if has_changes:
            log_success(logger, "Infrastructure plan created (state serial %s)", version.serial)
        else:
            log_success(logger, "No changes. Infrastructure matches the configuration.")
        return plan

    def apply(self, plan: ProvisioningPlan) -> ApplyEvents:
        if plan.plan_id in self._applied_plans:
            raise ApplyError(f"Plan {plan.plan_id} was already applied; re-run plan")
        if plan.environment != self.environment.name:
            raise ApplyError(
                f"Plan for {plan.environment} cannot be applied to {self.environment.name}"
            )
        self._applied_plans.add(plan.plan_id)

        logger.info("Applying infrastructure changes...")
        with self._lock("apply"):
            current = self.terraform.state_version()
            if current != plan.state_version:
                raise StalePlanError(plan.state_version.serial, current.serial)

            if not plan.has_changes:
                self._transition(ProvisioningState.APPLIED)
                logger.info("No changes to apply")
                return ApplyEvents()

            result, events = self.terraform.apply(plan.path)
            if not result.ok:
                self._transition(ProvisioningState.APPLY_FAILED)
                partial = bool(events.applied)
                for address in events.failed:
                    logger.error("   indeterminate: %s", address)
                for summary in events.diagnostics:
                    logger.error("   %s", summary)
                raise ApplyError(
                    "terraform apply failed"
                    + (" after partially applying changes; re-run plan and apply" if partial else ""),
                    partial=partial,
                    failed_resources=events.failed,
                    applied_resources=events.applied,
                )

        self._transition(ProvisioningState.APPLIED)
        log_success(logger, "Infrastructure applied successfully (%d resource(s))", len(events.applied))
        return events

    def extract_outputs(self) -> InfrastructureOutputs:
        outputs = InfrastructureOutputs.from_terraform_json(
            self.terraform.output_json(), extra_sensitive=self.settings.sensitive_outputs
        )
        outputs.require(self.settings.required_outputs)
        self._transition(ProvisioningState.OUTPUTS_EXTRACTED)
        logger.info("Extracted %d infrastructure output(s)", len(outputs))
        return outputs

    def destroy(self) -> bool:
        logger.warning("This will destroy ALL infrastructure resources!")
        confirmed = self.interaction_handler.confirm(
            "Are you sure you want to continue? (type 'yes' to confirm)",
            expected="yes",
            context=f"Environment: {self.environment.name}",
        )
        if not confirmed:
            logger.info("Destruction cancelled")
            return False

        logger.info("Destroying infrastructure...")
        with self._lock("destroy"):
            result = self.terraform.destroy()
            if not result.ok:
                raise CommandError("terraform destroy failed", result)
        log_success(logger, "Infrastructure destroyed")
        return True

    def backup_state(self) -> Path:
        logger.info("Backing up Terraform state...")
        target = backup_dir_for(self.terraform_dir, self._now())

        local_state = self.terraform_dir / LOCAL_STATE_FILE_NAME
        if local_state.is_file():
            shutil.copy2(local_state, target / LOCAL_STATE_FILE_NAME)
            log_success(logger, "Local state backed up to %s", target)

        (target / f"{LOCAL_STATE_FILE_NAME}.backup").write_text(
            self.terraform.pull_state(), encoding="utf-8"
        )
        log_success(logger, "Remote state backed up to %s", target)
        return target

    def show_info(self, outputs: Optional[InfrastructureOutputs] = None) -> Dict[str, str]:
        outputs = outputs or self.extract_outputs()
        masked = outputs.masked()
        logger.info("Infrastructure Information:")
        print("================================")
        for label, name in (
            ("VPC ID", "vpc_id"),
            ("EKS Cluster", "eks_cluster_id"),
            ("RDS Endpoint", "rds_instance_endpoint"),
            ("Region", "region"),
        ):
            print(f"{label}: {masked.get(name, 'Not available')}")
        print("")
        logger.info("Next steps:")
        print("1. Update your DNS to point to the load balancer")
        print("2. Deploy the application using: stack-deploy <env> deploy")
        print("3. Configure monitoring and alerting")
        print("")
        return masked

    def inspect_lock(self) -> Tuple[Optional[LockRecord], bool]:
        record = self.lock_store.read(self.handle.lock_id)
        if record is None:
            return None, False
        return record, record.is_stale(self.settings.lock_stale_after)

    def force_unlock(self) -> bool:
        """Remove a held lock after the operator types its id. Audited at WARNING."""
        record, stale = self.inspect_lock()
        if record is None:
            logger.info("No state lock held for %s", self.handle.lock_id)
            return False

        logger.warning(
            "State lock %s held by %s for %s since %s%s",
            record.lock_id, record.who, record.operation, record.created_at,
            " (stale)" if stale else "",
        )
        confirmed = self.interaction_handler.confirm(
            "Force-unlocking can corrupt state if that operation is still running.",
            expected=record.lock_id,
        )
        if not confirmed:
            logger.info("Unlock cancelled")
            return False

        removed = self.lock_store.force_release(record.lock_id)
        logger.warning(
            "AUDIT force-unlock of %s by %s (previous holder %s, operation %s, owner %s)",
            record.lock_id, _operator(), record.who, record.operation,
            removed.owner if removed else record.owner,
        )
        return True

    def run_deploy(self) -> InfrastructureOutputs:
        """The full provisioning sequence used by the ``deploy`` command."""
        self.check_prerequisites()
        self.ensure_backend()
        self.init()
        self.validate()
        plan = self.plan()
        self.apply(plan)
        outputs = self.extract_outputs()
        if self.settings.install_cluster_components:
            self.bootstrapper.setup_kubeconfig(self.environment, outputs)
            self.bootstrapper.install_components(outputs)
        self.show_info(outputs)
        log_success(logger, "Infrastructure setup completed successfully!")
        return outputs

    # ---------------------------------------------------------------- helpers

    def _ensure_tfvars(self) -> Path:
        path = self.terraform_dir / TFVARS_FILE_NAME
        if path.exists():
            return path

        logger.info("Creating %s file...", TFVARS_FILE_NAME)
        content = "\n".join(
            [
                "# AWS Configuration",
                f'aws_region = "{self.environment.region}"',
                f'environment = "{self.environment.name}"',
                "",
                "# Database Configuration",
                f'db_password = "{secrets.token_urlsafe(32)}"',
                "",
                "# Domain Configuration (update with your domain)",
                f'domain_name = "{self.settings.domain_name}"',
                "",
                "# Additional tags",
                "additional_tags = {",
                f'  Owner = "{_operator()}"',
                '  CreatedBy = "terraform"',
                f'  Environment = "{self.environment.name}"',
                "}",
                "",
            ]
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        os.chmod(path, 0o600)
        logger.warning("%s created with default values. Please review and update as needed.", TFVARS_FILE_NAME)
        return path


def _operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
