"""Post-provisioning cluster bootstrap: kubeconfig and add-on components."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..errors import BackendUnreachableError, CommandError
from ..local import ToolProbe
from ..utils.logging import get_logger, log_success
from .models import InfrastructureOutputs

if TYPE_CHECKING:
    from ..config import Environment, ProvisioningConfig
    from ..local import LocalSession

logger = get_logger(__name__)

LB_CONTROLLER = "aws-load-balancer-controller"
LB_CHART_REPO = "https://aws.github.io/eks-charts"


class ClusterBootstrapper:
    """Points kubectl at the new cluster and installs shared components."""

    def __init__(
        self,
        session: "LocalSession",
        config: "ProvisioningConfig",
        probe: Optional[ToolProbe] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.probe = probe or ToolProbe()

    def setup_kubeconfig(self, environment: "Environment", outputs: InfrastructureOutputs) -> str:
        logger.info("Setting up kubectl configuration...")
        cluster_name = outputs.get("eks_cluster_id")
        if not cluster_name:
            raise CommandError("Could not get cluster name from Terraform output")

        update = self.session.run(
            ["aws", "eks", "update-kubeconfig", "--region", environment.region, "--name", str(cluster_name)],
            timeout=120,
        )
        if not update.ok:
            raise CommandError("aws eks update-kubeconfig failed", update)

        if not self.session.run(["kubectl", "cluster-info"], timeout=60).ok:
            raise BackendUnreachableError(f"Failed to connect to EKS cluster {cluster_name}")
        log_success(logger, "kubectl configured for cluster %s", cluster_name)
        return str(cluster_name)

    def install_components(self, outputs: InfrastructureOutputs) -> None:
        logger.info("Installing cluster components...")
        self._install_load_balancer_controller(outputs)
        self._install_metrics_server()
        log_success(logger, "Cluster components installed")

    def _install_load_balancer_controller(self, outputs: InfrastructureOutputs) -> None:
        logger.info("Installing AWS Load Balancer Controller...")
        rendered = self.session.run(
            [
                "kubectl", "create", "serviceaccount", LB_CONTROLLER,
                "-n", "kube-system", "--dry-run=client", "-o", "yaml",
            ]
        )
        if not rendered.ok:
            raise CommandError("Failed to render load balancer service account", rendered)
        applied = self.session.run(["kubectl", "apply", "-f", "-"], input_text=rendered.stdout)
        if not applied.ok:
            raise CommandError("Failed to apply load balancer service account", applied)

        role_arn = outputs.get(self.config.load_balancer_role_output)
        annotated = self.session.run(
            [
                "kubectl", "annotate", "serviceaccount", LB_CONTROLLER,
                "-n", "kube-system",
                f"eks.amazonaws.com/role-arn={role_arn}",
                "--overwrite",
            ]
        )
        if not annotated.ok:
            raise CommandError("Failed to annotate load balancer service account", annotated)

        if not self.probe.is_available("helm"):
            logger.warning("Helm not found. Please install AWS Load Balancer Controller manually.")
            return

        for args in (
            ["helm", "repo", "add", "eks", LB_CHART_REPO, "--force-update"],
            ["helm", "repo", "update"],
            [
                "helm", "upgrade", "--install", LB_CONTROLLER, f"eks/{LB_CONTROLLER}",
                "-n", "kube-system",
                "--set", f"clusterName={outputs.get('eks_cluster_id')}",
                "--set", "serviceAccount.create=false",
                "--set", f"serviceAccount.name={LB_CONTROLLER}",
            ],
        ):
            result = self.session.run(args, timeout=600)
            if not result.ok:
                raise CommandError(f"{args[0]} {args[1]} failed", result)

    def _install_metrics_server(self) -> None:
        present = self.session.run(["kubectl", "get", "deployment", "metrics-server", "-n", "kube-system"])
        if present.ok:
            return
        logger.info("Installing metrics-server...")
        result = self.session.run(["kubectl", "apply", "-f", self.config.metrics_server_manifest], timeout=300)
        if not result.ok:
            raise CommandError("Failed to install metrics-server", result)
