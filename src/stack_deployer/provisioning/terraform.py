"""Thin driver for the Terraform CLI and parsers for its JSON output."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

from ..errors import BackendUnreachableError, CommandError
from .models import ApplyEvents, StateHandle, StateVersion

if TYPE_CHECKING:
    from ..local import LocalCommandResult, LocalSession

logger = logging.getLogger(__name__)


def parse_validate_diagnostics(raw: str) -> List[str]:
    """Return every error diagnostic from ``terraform validate -json``."""
    if not raw.strip():
        return []
    data = json.loads(raw)
    violations = []
    for diagnostic in data.get("diagnostics", []):
        if diagnostic.get("severity") != "error":
            continue
        text = diagnostic.get("summary", "unknown error")
        if diagnostic.get("detail"):
            text = f"{text}: {diagnostic['detail']}"
        location = diagnostic.get("range") or {}
        if location.get("filename"):
            line = (location.get("start") or {}).get("line")
            text = f"{text} ({location['filename']}:{line})" if line else f"{text} ({location['filename']})"
        violations.append(text)
    if not violations and data.get("valid") is False:
        violations.append("configuration is invalid")
    return violations


def parse_apply_events(raw: str) -> ApplyEvents:
    """Parse the line-delimited event stream of ``terraform apply -json``."""
    events = ApplyEvents()
    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        kind = message.get("type")
        hook = message.get("hook") or {}
        address = (hook.get("resource") or {}).get("addr")
        if kind == "apply_complete" and address:
            events.applied.append(address)
        elif kind == "apply_errored" and address:
            events.failed.append(address)
        elif kind == "diagnostic":
            diagnostic = message.get("diagnostic") or {}
            if diagnostic.get("severity") == "error":
                events.diagnostics.append(diagnostic.get("summary", "unknown error"))
                failed_address = diagnostic.get("address")
                if failed_address and failed_address not in events.failed:
                    events.failed.append(failed_address)
    return events


class TerraformRunner:
    """Runs terraform commands inside the configuration directory."""

    def __init__(self, session: "LocalSession", terraform_dir: Path, timeout: int = 3600) -> None:
        self.session = session
        self.terraform_dir = Path(terraform_dir)
        self.timeout = timeout

    def _run(self, *args: str, stream: bool = False) -> "LocalCommandResult":
        return self.session.run(
            ["terraform", *args],
            cwd=str(self.terraform_dir),
            timeout=self.timeout,
            stream_output=stream,
        )

    def init(self, handle: StateHandle) -> None:
        args = ["init", "-input=false", "-reconfigure"]
        args += [f"-backend-config={key}={value}" for key, value in handle.backend_config().items()]
        result = self._run(*args)
        if not result.ok:
            raise BackendUnreachableError(f"terraform init failed: {result.stderr or result.stdout}")

    def validate(self) -> List[str]:
        result = self._run("validate", "-json")
        try:
            violations = parse_validate_diagnostics(result.stdout)
        except json.JSONDecodeError:
            violations = [result.stderr or "terraform validate produced unreadable output"]
        if not result.ok and not violations:
            violations = [result.stderr or "terraform validate failed"]
        return violations

    def fmt(self) -> bool:
        return self._run("fmt", "-recursive").ok

    def state_version(self) -> StateVersion:
        return StateVersion.from_state_json(self.pull_state())

    def pull_state(self) -> str:
        result = self._run("state", "pull")
        if not result.ok:
            raise BackendUnreachableError(f"terraform state pull failed: {result.stderr}")
        return result.stdout

    def plan(self, plan_path: Path, var_file: Optional[Path] = None) -> bool:
        """Write a saved plan; returns True when it contains changes."""
        # 命令在 terraform_dir 内执行，路径需转为绝对路径
        plan_path = Path(plan_path).resolve()
        args = ["plan", "-input=false", "-detailed-exitcode", f"-out={plan_path}"]
        if var_file is not None:
            args.append(f"-var-file={Path(var_file).resolve()}")
        result = self._run(*args, stream=True)
        # -detailed-exitcode: 0 无变更, 2 有变更, 1 出错
        if result.exit_status == 0:
            return False
        if result.exit_status == 2:
            return True
        raise CommandError("terraform plan failed", result)

    def apply(self, plan_path: Path) -> Tuple["LocalCommandResult", ApplyEvents]:
        result = self._run("apply", "-input=false", "-auto-approve", "-json", str(Path(plan_path).resolve()))
        return result, parse_apply_events(result.stdout)

    def destroy(self) -> "LocalCommandResult":
        return self._run("destroy", "-input=false", "-auto-approve", stream=True)

    def output_json(self) -> str:
        result = self._run("output", "-json")
        if not result.ok:
            raise CommandError("terraform output failed", result)
        return result.stdout
