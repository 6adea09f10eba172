import json
import os
import stat
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fakes import (
    FakeBackend,
    FakeBootstrapper,
    FakeProbe,
    FakeSession,
    FakeTerraform,
    InMemoryLockStore,
    failed,
)
from stack_deployer.config import AppConfig
from stack_deployer.errors import (
    ApplyError,
    ConfigurationError,
    LifecycleError,
    LockHeldError,
    OutputNotFoundError,
    PrerequisiteError,
    StalePlanError,
)
from stack_deployer.interaction import ScriptedResponseHandler
from stack_deployer.provisioning import (
    ApplyEvents,
    LockRecord,
    ProvisioningController,
    ProvisioningState,
)


def make_controller(terraform_dir, *, terraform=None, lock_store=None, answers=(), probe=None, backend=None):
    config = AppConfig.from_dict({"provisioning": {"terraform_dir": str(terraform_dir)}})
    controller = ProvisioningController(
        config,
        config.environment("staging"),
        session=FakeSession(),
        terraform=terraform or FakeTerraform(),
        backend=backend or FakeBackend(),
        lock_store=lock_store if lock_store is not None else InMemoryLockStore(),
        probe=probe or FakeProbe(),
        bootstrapper=FakeBootstrapper(),
        interaction_handler=ScriptedResponseHandler(list(answers)),
        now=lambda: datetime(2026, 10, 18, 9, 30, 0),
    )
    return controller


class ConvergingTerraform(FakeTerraform):
    """Reports changes until the first apply, then matches the configuration."""

    def plan(self, plan_path, var_file=None) -> bool:
        super().plan(plan_path, var_file)
        return not self.applied_plans


def planned(controller):
    controller.init()
    controller.validate()
    return controller.plan()


class ApplyTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_lock_held_during_plan_and_apply_and_released_after(self) -> None:
        store = InMemoryLockStore()
        controller = make_controller(self.tmp, lock_store=store)
        seen = []
        controller.terraform.on_apply = lambda: seen.append(dict(store.records))

        plan = planned(controller)
        events = controller.apply(plan)

        self.assertEqual(store.acquired_for, ["plan", "apply"])
        self.assertEqual(list(seen[0]), [controller.handle.lock_id])
        self.assertEqual(store.records, {})
        self.assertEqual(events.applied, ["aws_vpc.main", "aws_eks_cluster.main"])
        self.assertEqual(controller.state, ProvisioningState.APPLIED)

    def test_plan_records_state_version(self) -> None:
        controller = make_controller(self.tmp)
        controller.terraform.serial = 7

        plan = planned(controller)

        self.assertEqual(plan.state_version.serial, 7)
        self.assertEqual(plan.environment, "staging")
        self.assertTrue(plan.has_changes)

    def test_stale_plan_is_rejected_and_lock_released(self) -> None:
        store = InMemoryLockStore()
        controller = make_controller(self.tmp, lock_store=store)
        plan = planned(controller)
        controller.terraform.serial += 1  # someone else applied in between

        with self.assertRaises(StalePlanError):
            controller.apply(plan)

        self.assertEqual(controller.terraform.applied_plans, [])
        self.assertEqual(store.records, {})

    def test_plan_is_consumed_once(self) -> None:
        controller = make_controller(self.tmp)
        plan = planned(controller)
        controller.apply(plan)

        with self.assertRaises(ApplyError):
            controller.apply(plan)
        self.assertEqual(len(controller.terraform.applied_plans), 1)

    def test_partial_apply_failure(self) -> None:
        store = InMemoryLockStore()
        controller = make_controller(self.tmp, lock_store=store)
        controller.terraform.apply_outcome = (
            failed("Error: creating RDS instance"),
            ApplyEvents(
                applied=["aws_vpc.main"],
                failed=["aws_db_instance.main"],
                diagnostics=["creating RDS instance"],
            ),
        )
        plan = planned(controller)

        with self.assertRaises(ApplyError) as ctx:
            controller.apply(plan)

        self.assertTrue(ctx.exception.partial)
        self.assertEqual(ctx.exception.failed_resources, ["aws_db_instance.main"])
        self.assertEqual(controller.state, ProvisioningState.APPLY_FAILED)
        self.assertEqual(store.records, {})

    def test_plan_without_changes_skips_apply(self) -> None:
        controller = make_controller(self.tmp)
        controller.terraform.plan_changes = False

        events = controller.apply(planned(controller))

        self.assertEqual(events.applied, [])
        self.assertEqual(controller.terraform.applied_plans, [])

    def test_concurrent_applies_never_both_succeed(self) -> None:
        store = InMemoryLockStore()
        first = make_controller(self.tmp, lock_store=store)
        second = make_controller(self.tmp, lock_store=store)
        first_plan = planned(first)
        second_plan = planned(second)

        entered = threading.Event()
        release = threading.Event()

        def slow_apply() -> None:
            entered.set()
            release.wait(5)

        first.terraform.on_apply = slow_apply
        results = {}

        def run_first() -> None:
            try:
                results["first"] = first.apply(first_plan)
            except Exception as exc:  # pragma: no cover - surfaced by the assertion below
                results["first"] = exc

        worker = threading.Thread(target=run_first)
        worker.start()
        self.assertTrue(entered.wait(5))
        try:
            with self.assertRaises(LockHeldError):
                second.apply(second_plan)
        finally:
            release.set()
            worker.join(5)

        self.assertIsInstance(results["first"], ApplyEvents)
        self.assertEqual(second.terraform.applied_plans, [])
        self.assertEqual(store.records, {})


class LifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_validate_before_init_is_illegal(self) -> None:
        controller = make_controller(self.tmp)
        with self.assertRaises(LifecycleError):
            controller.validate()

    def test_validation_lists_every_violation(self) -> None:
        controller = make_controller(self.tmp)
        controller.terraform.violations = ["Missing variable", "Unsupported argument"]
        controller.init()

        with self.assertRaises(ConfigurationError) as ctx:
            controller.validate()

        self.assertEqual(ctx.exception.violations, ["Missing variable", "Unsupported argument"])

    def test_missing_tools_and_credentials(self) -> None:
        controller = make_controller(
            self.tmp, probe=FakeProbe(["aws"]), backend=FakeBackend(credentials=False)
        )
        with self.assertRaises(PrerequisiteError) as ctx:
            controller.check_prerequisites()

        self.assertEqual(
            ctx.exception.missing,
            [
                "terraform (not installed)",
                "kubectl (not installed)",
                "AWS credentials (run 'aws configure')",
            ],
        )

    def test_tfvars_created_once_with_private_mode(self) -> None:
        controller = make_controller(self.tmp)
        planned(controller)
        tfvars = self.tmp / "terraform.tfvars"

        content = tfvars.read_text(encoding="utf-8")
        self.assertIn('environment = "staging"', content)
        self.assertIn("db_password = ", content)
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(tfvars.stat().st_mode), 0o600)

        tfvars.write_text('environment = "custom"\n', encoding="utf-8")
        controller.plan()
        self.assertEqual(tfvars.read_text(encoding="utf-8"), 'environment = "custom"\n')

    def test_run_deploy_bootstraps_cluster(self) -> None:
        controller = make_controller(self.tmp)
        outputs = controller.run_deploy()

        self.assertEqual(controller.state, ProvisioningState.OUTPUTS_EXTRACTED)
        self.assertEqual(outputs.get("vpc_id"), "vpc-0abc")
        self.assertEqual(controller.bootstrapper.kubeconfig_for, ["staging"])
        self.assertEqual(controller.bootstrapper.installed, 1)

    def test_second_deploy_without_changes_applies_nothing(self) -> None:
        terraform = ConvergingTerraform()
        store = InMemoryLockStore()

        first = make_controller(self.tmp, terraform=terraform, lock_store=store).run_deploy()
        with self.assertLogs("stack_deployer.provisioning.controller", level="INFO") as logs:
            second = make_controller(self.tmp, terraform=terraform, lock_store=store).run_deploy()

        self.assertEqual(len(terraform.applied_plans), 1)
        self.assertEqual(terraform.serial, 2)
        self.assertTrue(any("No changes" in line for line in logs.output))
        self.assertEqual(second.public_values(), first.public_values())
        self.assertEqual(store.records, {})


class TestDestroy:
    def test_destroy_cancelled_unless_exact_yes(self, tmp_path, caplog):
        controller = make_controller(tmp_path, answers=["no"])
        controller.init()

        with caplog.at_level("INFO"):
            assert controller.destroy() is False

        assert controller.terraform.destroyed is False
        assert "cancelled" in caplog.text
        assert controller.interaction_handler.asked[0].expected == "yes"

    def test_destroy_rejects_capitalised_yes(self, tmp_path):
        controller = make_controller(tmp_path, answers=["Yes"])
        assert controller.destroy() is False

    def test_destroy_confirmed(self, tmp_path):
        store = InMemoryLockStore()
        controller = make_controller(tmp_path, answers=["yes"], lock_store=store)

        assert controller.destroy() is True
        assert controller.terraform.destroyed is True
        assert store.acquired_for == ["destroy"]
        assert store.records == {}


class TestOutputs:
    def test_sensitive_outputs_never_printed(self, tmp_path, capsys):
        controller = make_controller(tmp_path)
        controller.init()

        masked = controller.show_info()

        printed = capsys.readouterr().out
        assert masked["rds_instance_endpoint"] == "***"
        assert "db.internal" not in printed
        assert "vpc-0abc" in printed

    def test_missing_required_output(self, tmp_path):
        terraform = FakeTerraform(outputs={"vpc_id": {"value": "vpc-1"}})
        controller = make_controller(tmp_path, terraform=terraform)
        controller.init()

        with pytest.raises(OutputNotFoundError) as excinfo:
            controller.extract_outputs()
        assert excinfo.value.name == "eks_cluster_id"

    def test_backup_writes_remote_state(self, tmp_path):
        controller = make_controller(tmp_path)
        (tmp_path / "terraform.tfstate").write_text("{}", encoding="utf-8")

        target = controller.backup_state()

        assert target == tmp_path / "backups" / "20261018-093000"
        assert (target / "terraform.tfstate").read_text(encoding="utf-8") == "{}"
        remote = json.loads((target / "terraform.tfstate.backup").read_text(encoding="utf-8"))
        assert remote["serial"] == 1


class TestLocks:
    @staticmethod
    def held_by_other(controller, age_seconds):
        created = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        record = LockRecord(controller.handle.lock_id, "other-owner", "apply", "ci@runner", created.isoformat())
        controller.lock_store.try_acquire(record)
        return record

    def test_held_lock_blocks_plan(self, tmp_path):
        controller = make_controller(tmp_path)
        self.held_by_other(controller, 60)
        controller.init()
        controller.validate()

        with pytest.raises(LockHeldError) as excinfo:
            controller.plan()
        assert excinfo.value.stale is False
        assert excinfo.value.record.who == "ci@runner"

    def test_stale_lock_is_reported_not_removed(self, tmp_path):
        controller = make_controller(tmp_path)
        self.held_by_other(controller, 7200)
        controller.init()
        controller.validate()

        with pytest.raises(LockHeldError) as excinfo:
            controller.plan()
        assert excinfo.value.stale is True
        assert controller.lock_store.read(controller.handle.lock_id) is not None

    def test_force_unlock_requires_the_lock_id(self, tmp_path, caplog):
        controller = make_controller(tmp_path, answers=["yes"])
        self.held_by_other(controller, 7200)

        assert controller.force_unlock() is False
        assert controller.lock_store.read(controller.handle.lock_id) is not None

        controller.interaction_handler.answers.append(controller.handle.lock_id)
        with caplog.at_level("WARNING"):
            assert controller.force_unlock() is True
        assert controller.lock_store.read(controller.handle.lock_id) is None
        assert "AUDIT force-unlock" in caplog.text
        assert "ci@runner" in caplog.text

    def test_force_unlock_without_lock(self, tmp_path):
        controller = make_controller(tmp_path)
        assert controller.force_unlock() is False
        assert controller.interaction_handler.asked == []
