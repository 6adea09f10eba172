"""kubectl driver scoped to one namespace."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..errors import CommandError
from .models import WorkloadDescriptor

if TYPE_CHECKING:
    from ..local import LocalCommandResult, LocalSession

logger = logging.getLogger(__name__)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def pod_is_ready(pod: Dict[str, Any]) -> bool:
    if (pod.get("metadata") or {}).get("deletionTimestamp"):
        return False
    for condition in (pod.get("status") or {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def deployment_rollout_complete(deployment: Dict[str, Any]) -> bool:
    """Same completion rule ``kubectl rollout status`` applies to a Deployment."""
    metadata = deployment.get("metadata") or {}
    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}
    desired = spec.get("replicas", 1)
    if status.get("observedGeneration", 0) < metadata.get("generation", 0):
        return False
    updated = status.get("updatedReplicas", 0)
    if updated < desired:
        return False
    # 旧副本仍在终止中
    if status.get("replicas", 0) > updated:
        return False
    return status.get("availableReplicas", 0) >= updated


class KubeClient:
    """Wraps the kubectl calls the deployment controller needs."""

    def __init__(self, session: "LocalSession", namespace: str, timeout: int = 300) -> None:
        self.session = session
        self.namespace = namespace
        self.timeout = timeout

    def _kubectl(self, *args: str, input_text: Optional[str] = None, namespaced: bool = True) -> "LocalCommandResult":
        argv = ["kubectl", *args]
        if namespaced:
            argv += ["-n", self.namespace]
        return self.session.run(argv, input_text=input_text, timeout=self.timeout)

    def _checked(self, description: str, *args: str, input_text: Optional[str] = None, namespaced: bool = True) -> "LocalCommandResult":
        result = self._kubectl(*args, input_text=input_text, namespaced=namespaced)
        if not result.ok:
            raise CommandError(description, result)
        return result

    def _get_json(self, *args: str) -> Dict[str, Any]:
        result = self._checked(f"kubectl get {' '.join(args)}", "get", *args, "-o", "json")
        return json.loads(result.stdout or "{}")

    # --------------------------------------------------------------- cluster

    def cluster_reachable(self) -> bool:
        return self._kubectl("cluster-info", namespaced=False).ok

    def apply_file(self, path: Path) -> None:
        # 清单自带 namespace 字段，不强制 -n
        self._checked(f"kubectl apply -f {path}", "apply", "-f", str(path), namespaced=False)

    def apply_object(self, obj: Dict[str, Any]) -> None:
        """Apply an object sent on stdin, so its data never appears on a command line."""
        self._checked(
            f"kubectl apply {obj.get('kind', 'object')}/{obj.get('metadata', {}).get('name')}",
            "apply", "-f", "-",
            input_text=json.dumps(obj),
        )

    def apply_configmap_from_files(self, name: str, files: Dict[str, Path]) -> None:
        args = ["create", "configmap", name, "--dry-run=client", "-o", "yaml"]
        args += [f"--from-file={key}={path}" for key, path in files.items()]
        rendered = self._checked(f"render configmap {name}", *args)
        self._checked(f"apply configmap {name}", "apply", "-f", "-", input_text=rendered.stdout)

    # --------------------------------------------------------------- workloads

    def pods(self, selector: str) -> List[Dict[str, Any]]:
        return self._get_json("pods", "-l", selector).get("items", [])

    def pods_ready(self, selector: str) -> bool:
        pods = self.pods(selector)
        return bool(pods) and all(pod_is_ready(pod) for pod in pods)

    def find_ready_pod(self, selector: str) -> Optional[str]:
        for pod in self.pods(selector):
            if pod_is_ready(pod):
                return pod["metadata"]["name"]
        return None

    def workload(self, descriptor: WorkloadDescriptor) -> Dict[str, Any]:
        return self._get_json(descriptor.resource)

    def rollout_complete(self, descriptor: WorkloadDescriptor) -> bool:
        return deployment_rollout_complete(self.workload(descriptor))

    def replica_counts(self, descriptor: WorkloadDescriptor) -> tuple:
        obj = self.workload(descriptor)
        status = obj.get("status") or {}
        return status.get("readyReplicas", 0), (obj.get("spec") or {}).get("replicas", 0)

    def container_images(self, descriptor: WorkloadDescriptor) -> List[str]:
        template = ((self.workload(descriptor).get("spec") or {}).get("template") or {}).get("spec") or {}
        return [container.get("image", "") for container in template.get("containers", [])]

    def exec(self, pod: str, command: Iterable[str], timeout: Optional[int] = None) -> "LocalCommandResult":
        return self.session.run(
            ["kubectl", "exec", "-n", self.namespace, pod, "--", *command],
            timeout=timeout or self.timeout,
        )

    # --------------------------------------------------------------- rollout history

    def current_revision(self, descriptor: WorkloadDescriptor) -> int:
        annotations = (self.workload(descriptor).get("metadata") or {}).get("annotations") or {}
        return int(annotations.get(REVISION_ANNOTATION, 0))

    def revisions(self, descriptor: WorkloadDescriptor) -> List[int]:
        """Revisions still held by ReplicaSets owned by the workload."""
        found = []
        for replica_set in self._get_json("replicasets", "-l", descriptor.label_selector).get("items", []):
            metadata = replica_set.get("metadata") or {}
            owners = metadata.get("ownerReferences") or []
            if not any(owner.get("name") == descriptor.name for owner in owners):
                continue
            revision = (metadata.get("annotations") or {}).get(REVISION_ANNOTATION)
            if revision is not None:
                found.append(int(revision))
        return sorted(found)

    def rollout_undo(self, descriptor: WorkloadDescriptor, to_revision: int) -> None:
        self._checked(
            f"rollout undo {descriptor.resource}",
            "rollout", "undo", descriptor.resource, f"--to-revision={to_revision}",
        )

    def get_annotation(self, descriptor: WorkloadDescriptor, key: str) -> Optional[str]:
        annotations = (self.workload(descriptor).get("metadata") or {}).get("annotations") or {}
        return annotations.get(key)

    def annotate(self, descriptor: WorkloadDescriptor, key: str, value: Optional[str]) -> None:
        """Set ``key``; ``None`` removes it."""
        argument = f"{key}-" if value is None else f"{key}={value}"
        self._checked(f"annotate {descriptor.resource}", "annotate", descriptor.resource, argument, "--overwrite")

    # --------------------------------------------------------------- cleanup

    def list_items(self, kind: str) -> List[Dict[str, Any]]:
        return self._get_json(kind).get("items", [])

    def delete_orphaning(self, kind: str, names: List[str]) -> None:
        """Remove the controlling records and leave their pods to finish."""
        if not names:
            return
        self._checked(
            f"delete {kind}",
            "delete", kind, *names, "--cascade=orphan", "--ignore-not-found=true",
        )

    # --------------------------------------------------------------- introspection

    def table(self, kind: str, wide: bool = False) -> str:
        args = ["get", kind] + (["-o", "wide"] if wide else [])
        result = self._kubectl(*args)
        return result.stdout if result.ok else f"(unavailable: {result.stderr})"

    def ingress_address(self, name: str) -> Optional[str]:
        result = self._kubectl("get", "ingress", name, "-o", "json")
        if not result.ok or not result.stdout:
            return None
        entries = (((json.loads(result.stdout).get("status") or {}).get("loadBalancer") or {}).get("ingress")) or []
        if not entries:
            return None
        return entries[0].get("ip") or entries[0].get("hostname")


def older_than(item: Dict[str, Any], cutoff: datetime, field_path: Iterable[str]) -> bool:
    """True when the timestamp at ``field_path`` exists and precedes ``cutoff``."""
    value: Any = item
    for key in field_path:
        value = (value or {}).get(key)
    moment = parse_timestamp(value)
    if moment is None:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment < cutoff
