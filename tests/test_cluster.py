"""Tests for the post-provisioning cluster bootstrap."""

import pytest

from fakes import FakeProbe, FakeSession, failed
from stack_deployer.config import Environment, ProvisioningConfig
from stack_deployer.errors import BackendUnreachableError, OutputNotFoundError
from stack_deployer.provisioning import ClusterBootstrapper, InfrastructureOutputs

ROLE_ARN = "arn:aws:iam::123456789012:role/ghibli-food-lb-controller"

OUTPUTS = InfrastructureOutputs.from_terraform_json(
    '{"eks_cluster_id": {"value": "ghibli-food-staging"},'
    ' "aws_load_balancer_controller_role_arn": {"value": "%s"}}' % ROLE_ARN
)


def make_bootstrapper(available=("kubectl", "aws", "helm")):
    session = FakeSession()
    return ClusterBootstrapper(session, ProvisioningConfig(), probe=FakeProbe(available)), session


class TestKubeconfig:
    def test_points_kubectl_at_the_cluster(self):
        bootstrapper, session = make_bootstrapper()
        environment = Environment(name="staging", namespace="ghibli-food-staging", region="eu-west-1")

        assert bootstrapper.setup_kubeconfig(environment, OUTPUTS) == "ghibli-food-staging"
        assert session.commands()[0] == [
            "aws", "eks", "update-kubeconfig", "--region", "eu-west-1", "--name", "ghibli-food-staging",
        ]

    def test_unreachable_cluster(self):
        bootstrapper, session = make_bootstrapper()
        session.add(["kubectl", "cluster-info"], failed("connection refused"))
        environment = Environment(name="staging", namespace="ghibli-food-staging", region="us-west-2")

        with pytest.raises(BackendUnreachableError):
            bootstrapper.setup_kubeconfig(environment, OUTPUTS)


class TestComponents:
    def test_service_account_annotated_with_role_arn(self):
        bootstrapper, session = make_bootstrapper()

        bootstrapper.install_components(OUTPUTS)

        annotate = next(args for args in session.commands() if args[:2] == ["kubectl", "annotate"])
        assert f"eks.amazonaws.com/role-arn={ROLE_ARN}" in annotate
        assert "--overwrite" in annotate
        helm = [args for args in session.commands() if args[0] == "helm"]
        assert helm[-1][:4] == ["helm", "upgrade", "--install", "aws-load-balancer-controller"]
        assert "clusterName=ghibli-food-staging" in helm[-1]

    def test_missing_helm_is_a_warning(self, caplog):
        bootstrapper, session = make_bootstrapper(available=("kubectl", "aws"))

        with caplog.at_level("WARNING"):
            bootstrapper.install_components(OUTPUTS)

        assert "Helm not found" in caplog.text
        assert not any(args[0] == "helm" for args in session.commands())

    def test_metrics_server_left_alone_when_present(self):
        bootstrapper, session = make_bootstrapper()

        bootstrapper.install_components(OUTPUTS)

        manifest = ProvisioningConfig().metrics_server_manifest
        assert ["kubectl", "apply", "-f", manifest] not in session.commands()

    def test_metrics_server_installed_when_absent(self):
        bootstrapper, session = make_bootstrapper()
        session.add(["kubectl", "get", "deployment", "metrics-server"], failed("NotFound"))

        bootstrapper.install_components(OUTPUTS)

        manifest = ProvisioningConfig().metrics_server_manifest
        assert ["kubectl", "apply", "-f", manifest] in session.commands()

    def test_missing_role_output(self):
        bootstrapper, session = make_bootstrapper()
        outputs = InfrastructureOutputs.from_terraform_json('{"eks_cluster_id": {"value": "c"}}')

        with pytest.raises(OutputNotFoundError):
            bootstrapper.install_components(outputs)

        assert not any(args[:2] == ["kubectl", "annotate"] for args in session.commands())
