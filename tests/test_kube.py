import json
import unittest

from fakes import FakeSession, failed, ok
from stack_deployer.deployment import KubeClient, WorkloadDescriptor
from stack_deployer.deployment.kube import deployment_rollout_complete, pod_is_ready

BACKEND = WorkloadDescriptor(name="backend", manifest="backend.yaml", selector="app=backend", replicas=2)


def deployment(generation=2, observed=2, replicas=2, updated=2, available=2, total=None):
    return {
        "metadata": {"generation": generation},
        "spec": {"replicas": replicas},
        "status": {
            "observedGeneration": observed,
            "updatedReplicas": updated,
            "availableReplicas": available,
            "replicas": updated if total is None else total,
        },
    }


class RolloutStatusTests(unittest.TestCase):
    def test_complete(self) -> None:
        self.assertTrue(deployment_rollout_complete(deployment()))

    def test_controller_has_not_seen_new_spec(self) -> None:
        self.assertFalse(deployment_rollout_complete(deployment(generation=3, observed=2)))

    def test_old_replicas_still_terminating(self) -> None:
        self.assertFalse(deployment_rollout_complete(deployment(total=3)))

    def test_updated_but_not_available(self) -> None:
        self.assertFalse(deployment_rollout_complete(deployment(available=1)))

    def test_pod_readiness(self) -> None:
        ready = {"metadata": {}, "status": {"conditions": [{"type": "Ready", "status": "True"}]}}
        terminating = {"metadata": {"deletionTimestamp": "2026-10-18T00:00:00Z"}, "status": ready["status"]}
        self.assertTrue(pod_is_ready(ready))
        self.assertFalse(pod_is_ready(terminating))
        self.assertFalse(pod_is_ready({"status": {"conditions": []}}))


class KubeClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = FakeSession()
        self.kube = KubeClient(self.session, "ghibli-food-staging")

    def test_commands_are_namespaced(self) -> None:
        self.session.add(["kubectl", "get", "pods"], ok(json.dumps({"items": []})))
        self.assertFalse(self.kube.pods_ready("app=postgres"))
        self.assertEqual(
            self.session.commands()[0],
            ["kubectl", "get", "pods", "-l", "app=postgres", "-o", "json", "-n", "ghibli-food-staging"],
        )

    def test_container_images_from_pod_template(self) -> None:
        workload = deployment()
        workload["spec"]["template"] = {
            "spec": {"containers": [{"name": "api", "image": "ghcr.io/acme/backend:v2"}]}
        }
        self.session.add(["kubectl", "get", "deployment/backend"], ok(json.dumps(workload)))

        self.assertEqual(self.kube.container_images(BACKEND), ["ghcr.io/acme/backend:v2"])

    def test_revisions_only_from_owned_replica_sets(self) -> None:
        def rs(name, owner, revision):
            return {
                "metadata": {
                    "name": name,
                    "ownerReferences": [{"kind": "Deployment", "name": owner}],
                    "annotations": {"deployment.kubernetes.io/revision": str(revision)},
                }
            }

        items = [rs("backend-a", "backend", 3), rs("backend-b", "backend", 1), rs("canary-a", "backend-canary", 9)]
        self.session.add(["kubectl", "get", "replicasets"], ok(json.dumps({"items": items})))

        self.assertEqual(self.kube.revisions(BACKEND), [1, 3])

    def test_secret_objects_travel_on_stdin(self) -> None:
        self.kube.apply_object({"kind": "Secret", "metadata": {"name": "infra"}, "stringData": {"PASSWORD": "s3cret"}})

        call = self.session.calls[0]
        self.assertNotIn("s3cret", " ".join(call["args"]))
        self.assertIn("s3cret", call["input_text"])

    def test_ingress_address_prefers_ip(self) -> None:
        status = {"status": {"loadBalancer": {"ingress": [{"ip": "198.51.100.7", "hostname": "lb.example"}]}}}
        self.session.add(["kubectl", "get", "ingress"], ok(json.dumps(status)))
        self.assertEqual(self.kube.ingress_address("ghibli-food-ingress"), "198.51.100.7")

    def test_ingress_address_falls_back_to_hostname(self) -> None:
        status = {"status": {"loadBalancer": {"ingress": [{"hostname": "k8s-lb.elb.amazonaws.com"}]}}}
        self.session.add(["kubectl", "get", "ingress"], ok(json.dumps(status)))
        self.assertEqual(self.kube.ingress_address("ghibli-food-ingress"), "k8s-lb.elb.amazonaws.com")

    def test_ingress_without_address(self) -> None:
        self.session.add(["kubectl", "get", "ingress"], failed("NotFound"))
        self.assertIsNone(self.kube.ingress_address("ghibli-food-ingress"))

    def test_annotation_removal(self) -> None:
        self.kube.annotate(BACKEND, "stack-deployer/rolled-back-from", None)
        self.assertIn("stack-deployer/rolled-back-from-", self.session.commands()[0])

    def test_orphan_delete(self) -> None:
        self.kube.delete_orphaning("replicasets", ["backend-1"])
        self.kube.delete_orphaning("jobs", [])
        self.assertEqual(len(self.session.calls), 1)
        self.assertIn("--cascade=orphan", self.session.commands()[0])
