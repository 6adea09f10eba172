"""Hand-written stand-ins for the external tools used across the test suite."""

import json
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from stack_deployer.local import LocalCommandResult, ToolAvailability
from stack_deployer.provisioning import ApplyEvents, LockStore, StateVersion


def ok(stdout: str = "") -> LocalCommandResult:
    return LocalCommandResult(command="", stdout=stdout, stderr="", exit_status=0)


def failed(stderr: str = "boom", exit_status: int = 1, stdout: str = "") -> LocalCommandResult:
    return LocalCommandResult(command="", stdout=stdout, stderr=stderr, exit_status=exit_status)


class FakeSession:
    """Answers commands from (prefix, result) rules; the first matching prefix wins."""

    def __init__(self, rules: Optional[List[Tuple[Sequence[str], object]]] = None) -> None:
        self.rules = list(rules or [])
        self.calls: List[dict] = []

    def add(self, prefix: Sequence[str], result) -> None:
        self.rules.insert(0, (tuple(prefix), result))

    def run(self, args, *, timeout=None, input_text=None, cwd=None, stream_output=False):
        args = list(args)
        self.calls.append({"args": args, "input_text": input_text, "cwd": cwd})
        for prefix, result in self.rules:
            if tuple(args[: len(prefix)]) == tuple(prefix):
                if callable(result):
                    return result(args, input_text)
                return result
        return ok()

    def commands(self) -> List[List[str]]:
        return [call["args"] for call in self.calls]


class FakeProbe:
    def __init__(self, available: Sequence[str] = ("terraform", "aws", "kubectl", "docker", "helm", "trivy")) -> None:
        self.available = set(available)

    def collect(self, tools):
        availability = ToolAvailability()
        for tool in tools:
            if tool in self.available:
                availability.found[tool] = f"/usr/bin/{tool}"
            else:
                availability.missing.append(tool)
        return availability

    def is_available(self, tool: str) -> bool:
        return tool in self.available


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class InMemoryLockStore(LockStore):
    def __init__(self) -> None:
        self.records = {}
        self.acquired_for: List[str] = []
        self._mutex = threading.Lock()

    def try_acquire(self, record):
        with self._mutex:
            holder = self.records.get(record.lock_id)
            if holder is not None:
                return holder
            self.records[record.lock_id] = record
            self.acquired_for.append(record.operation)
            return None

    def read(self, lock_id):
        return self.records.get(lock_id)

    def release(self, lock_id, owner):
        with self._mutex:
            holder = self.records.get(lock_id)
            if holder is None or holder.owner != owner:
                return False
            del self.records[lock_id]
            return True

    def force_release(self, lock_id):
        with self._mutex:
            return self.records.pop(lock_id, None)


class FakeBackend:
    def __init__(self, credentials: bool = True) -> None:
        self.credentials = credentials
        self.ensured = []

    def caller_identity_ok(self) -> bool:
        return self.credentials

    def ensure(self, handle) -> None:
        self.ensured.append(handle)


class FakeBootstrapper:
    def __init__(self) -> None:
        self.kubeconfig_for = []
        self.installed = 0

    def setup_kubeconfig(self, environment, outputs):
        self.kubeconfig_for.append(environment.name)
        return outputs.get("eks_cluster_id")

    def install_components(self, outputs) -> None:
        self.installed += 1


DEFAULT_OUTPUTS = {
    "eks_cluster_id": {"value": "ghibli-food-staging", "sensitive": False},
    "vpc_id": {"value": "vpc-0abc", "sensitive": False},
    "rds_instance_endpoint": {"value": "db.internal:5432", "sensitive": True},
    "region": {"value": "us-west-2", "sensitive": False},
}


class FakeTerraform:
    """In-memory provisioning engine keeping a serial number like a remote state."""

    def __init__(self, outputs: Optional[Dict] = None) -> None:
        self.serial = 1
        self.lineage = "lineage-1"
        self.plan_changes = True
        self.violations: List[str] = []
        self.apply_outcome: Optional[Tuple[LocalCommandResult, ApplyEvents]] = None
        self.on_apply: Optional[Callable[[], None]] = None
        self.outputs = dict(DEFAULT_OUTPUTS if outputs is None else outputs)
        self.applied_plans = []
        self.var_files = []
        self.destroyed = False
        self.inits = 0

    def init(self, handle) -> None:
        self.inits += 1

    def validate(self) -> List[str]:
        return list(self.violations)

    def fmt(self) -> bool:
        return True

    def state_version(self) -> StateVersion:
        return StateVersion(self.serial, self.lineage)

    def pull_state(self) -> str:
        return json.dumps({"serial": self.serial, "lineage": self.lineage, "resources": []})

    def plan(self, plan_path, var_file=None) -> bool:
        self.var_files.append(var_file)
        return self.plan_changes

    def apply(self, plan_path):
        if self.on_apply is not None:
            self.on_apply()
        self.applied_plans.append(plan_path)
        if self.apply_outcome is not None:
            return self.apply_outcome
        self.serial += 1
        return ok(), ApplyEvents(applied=["aws_vpc.main", "aws_eks_cluster.main"])

    def destroy(self):
        self.destroyed = True
        return ok()

    def output_json(self) -> str:
        return json.dumps(self.outputs)


class FakeKube:
    """Enough of a cluster to drive the deployment controller.

    Each service keeps a ReplicaSet history ``{revision: version}``; applying its
    manifest with a pending version creates the next revision, and ``rollout_undo``
    re-labels the target ReplicaSet with a new revision as the platform does.
    """

    def __init__(self, services: Sequence[str]) -> None:
        self.applied: List[str] = []
        self.objects: List[dict] = []
        self.configmaps: Dict[str, dict] = {}
        self.history: Dict[str, Dict[int, str]] = {name: {1: "v1"} for name in services}
        self.current: Dict[str, int] = {name: 1 for name in services}
        self.annotations: Dict[str, Dict[str, str]] = {name: {} for name in services}
        self.pending_versions: Dict[str, str] = {}
        self.data_store_ready = True
        self.rollout_ready: Dict[str, bool] = {}
        self.exec_results: Dict[str, LocalCommandResult] = {}
        self.exec_calls: List[Tuple[str, List[str]]] = []
        self.items: Dict[str, List[dict]] = {"replicasets": [], "jobs": []}
        self.deleted: Dict[str, List[str]] = {}
        self.address: Optional[str] = "203.0.113.10"
        self.images: Dict[str, List[str]] = {}
        self.live_replicas: Dict[str, int] = {}
        self.reachable = True

    # -- writes
    def cluster_reachable(self) -> bool:
        return self.reachable

    def apply_file(self, path) -> None:
        name = str(path).replace("\\", "/").rsplit("/", 1)[-1]
        self.applied.append(name)
        service = name[: -len(".yaml")] if name.endswith(".yaml") else name
        if service in self.pending_versions:
            version = self.pending_versions.pop(service)
            revision = max(self.history[service]) + 1
            self.history[service][revision] = version
            self.current[service] = revision

    def apply_object(self, obj) -> None:
        self.objects.append(obj)

    def apply_configmap_from_files(self, name, files) -> None:
        self.configmaps[name] = dict(files)

    def annotate(self, descriptor, key, value) -> None:
        if value is None:
            self.annotations[descriptor.name].pop(key, None)
        else:
            self.annotations[descriptor.name][key] = value

    def rollout_undo(self, descriptor, to_revision) -> None:
        history = self.history[descriptor.name]
        version = history.pop(to_revision)
        revision = max(list(history) + [to_revision]) + 1
        history[revision] = version
        self.current[descriptor.name] = revision
        self.annotations[descriptor.name] = {}

    def delete_orphaning(self, kind, names) -> None:
        self.deleted.setdefault(kind, []).extend(names)

    # -- reads
    def pods_ready(self, selector) -> bool:
        return self.data_store_ready

    def rollout_complete(self, descriptor) -> bool:
        return self.rollout_ready.get(descriptor.name, True)

    def find_ready_pod(self, selector):
        return f"{selector.split('=')[-1]}-pod-0"

    def exec(self, pod, command, timeout=None):
        self.exec_calls.append((pod, list(command)))
        service = pod.rsplit("-pod-", 1)[0]
        for key in (f"{service}:{command[-1]}", f"{service}:{command[0]}"):
            if key in self.exec_results:
                return self.exec_results[key]
        return ok()

    def version_of(self, name) -> str:
        return self.history[name][self.current[name]]

    def current_revision(self, descriptor) -> int:
        return self.current[descriptor.name]

    def revisions(self, descriptor) -> List[int]:
        return sorted(self.history[descriptor.name])

    def get_annotation(self, descriptor, key):
        return self.annotations[descriptor.name].get(key)

    def replica_counts(self, descriptor):
        replicas = self.live_replicas.get(descriptor.name, descriptor.replicas)
        return replicas, replicas

    def container_images(self, descriptor) -> List[str]:
        return list(self.images.get(descriptor.name, []))

    def list_items(self, kind) -> List[dict]:
        return list(self.items.get(kind, []))

    def ingress_address(self, name):
        return self.address

    def table(self, kind, wide=False) -> str:
        return f"NAME\n{kind}-1\n"


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class FakeHttp:
    def __init__(self, status_code: int = 200, error: Optional[Exception] = None) -> None:
        self.status_code = status_code
        self.error = error
        self.urls: List[str] = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)
