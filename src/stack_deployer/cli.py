"""Command-line interfaces for stack-deployer.

Three entry points share one shape: ``<prog> [positional...]`` with defaults, unknown
commands print usage to stderr and exit 1, and any ``DeployerError`` is logged and
mapped to its exit code.
"""

from __future__ import annotations

import argparse
import sys
from typing import Callable, Dict, List, Optional

from .config import AppConfig, load_config
from .deployment import DeploymentController
from .errors import DeployerError
from .images import ImageBuilder
from .local import ToolProbe
from .provisioning import InfrastructureOutputs, ProvisioningController
from .utils.logging import get_logger

logger = get_logger(__name__)

INFRA_COMMANDS = {
    "init": "Initialize the Terraform backend",
    "plan": "Create a Terraform plan",
    "deploy": "Deploy infrastructure (default)",
    "destroy": "Destroy infrastructure",
    "backup": "Backup Terraform state",
    "info": "Show infrastructure information",
    "unlock": "Force-release a held state lock (asks for the lock id)",
}

DEPLOY_COMMANDS = {
    "deploy": "Deploy the application (default)",
    "rollback": "Rollback deployment",
    "health-check": "Run health checks",
    "info": "Show deployment information",
    "cleanup": "Clean up old resources",
}

IMAGE_COMMANDS = {
    "build": "Build Docker images (default)",
    "compose": "Build using Docker Compose",
    "scan": "Scan images for vulnerabilities",
    "tag": "Add additional tag to images",
    "push": "Push images to registry",
    "info": "Show built image information",
}


def _build_parser(prog: str, description: str, positionals: List[tuple]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description, add_help=True)
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    for name, default, help_text in positionals:
        parser.add_argument(name, nargs="?", default=default, help=help_text)
    return parser


def _usage(parser: argparse.ArgumentParser, commands: Dict[str, str], extra: Optional[List[str]] = None) -> int:
    lines = [parser.format_usage().rstrip(), "", "Commands:"]
    width = max(len(name) for name in commands)
    lines.extend(f"  {name.ljust(width)}  - {text}" for name, text in commands.items())
    if extra:
        lines.append("")
        lines.extend(extra)
    print("\n".join(lines), file=sys.stderr)
    return 1


def _run(action: Callable[[], object]) -> int:
    try:
        action()
    except DeployerError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    return 0


def _environment(config: AppConfig, name: str):
    if not config.is_declared(name):
        logger.warning("Environment %s is not declared in the configuration; using defaults", name)
    return config.environment(name)


# ---------------------------------------------------------------------- stack-infra

def run_infra_cli(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser(
        "stack-infra",
        "Provision the infrastructure of one environment with Terraform.",
        [
            ("environment", "production", "Target environment (default: production)"),
            ("command", "deploy", "One of: " + ", ".join(INFRA_COMMANDS)),
        ],
    )
    args = parser.parse_args(argv)
    if args.command not in INFRA_COMMANDS:
        return _usage(parser, INFRA_COMMANDS)

    config = load_config(args.config)
    environment = _environment(config, args.environment)
    logger.info("Environment: %s", environment.name)
    logger.info("Region: %s", environment.region)
    controller = ProvisioningController(config, environment)

    def action() -> None:
        if args.command == "deploy":
            controller.run_deploy()
        elif args.command == "init":
            controller.check_prerequisites()
            controller.ensure_backend()
            controller.init()
        elif args.command == "plan":
            controller.check_prerequisites()
            controller.init()
            controller.validate()
            controller.plan()
        elif args.command == "destroy":
            controller.check_prerequisites()
            controller.init()
            controller.destroy()
        elif args.command == "backup":
            controller.init()
            controller.backup_state()
        elif args.command == "info":
            controller.init()
            controller.show_info()
        elif args.command == "unlock":
            controller.force_unlock()

    return _run(action)


# ---------------------------------------------------------------------- stack-deploy

def _infrastructure_outputs(config: AppConfig, environment) -> Optional[InfrastructureOutputs]:
    """Read the applied outputs so they can be bound into the namespace."""
    if not config.deployment.consume_infra_outputs:
        return None
    if not ToolProbe().is_available("terraform"):
        logger.warning("terraform not found; deploying without infrastructure bindings")
        return None
    provisioning = ProvisioningController(config, environment)
    provisioning.init()
    return provisioning.extract_outputs()


def run_deploy_cli(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser(
        "stack-deploy",
        "Roll out the application workloads of one environment.",
        [
            ("environment", "production", "Target environment (default: production)"),
            ("command", "deploy", "One of: " + ", ".join(DEPLOY_COMMANDS)),
            ("component", "all", "Service to roll back (default: all)"),
        ],
    )
    args = parser.parse_args(argv)
    config = load_config(args.config)
    components = ["all"] + [service["name"] for service in config.deployment.services]
    component_help = ["Components:"] + [f"  {name}" for name in components]
    if args.command not in DEPLOY_COMMANDS:
        return _usage(parser, DEPLOY_COMMANDS, component_help)
    if args.component not in components:
        logger.error("Unknown component: %s", args.component)
        return _usage(parser, DEPLOY_COMMANDS, component_help)

    environment = _environment(config, args.environment)
    controller = DeploymentController(config, environment)

    def action() -> None:
        if args.command == "deploy":
            controller.deploy(_infrastructure_outputs(config, environment))
        elif args.command == "rollback":
            controller.rollback(args.component)
        elif args.command == "health-check":
            controller.health_check()
        elif args.command == "info":
            controller.info()
        elif args.command == "cleanup":
            controller.cleanup()

    return _run(action)


# ---------------------------------------------------------------------- stack-images

def run_images_cli(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser(
        "stack-images",
        "Build and publish the service container images.",
        [
            ("command", "build", "One of: " + ", ".join(IMAGE_COMMANDS)),
            ("target", None, "Service for build (default: all) or tag name for tag"),
        ],
    )
    args = parser.parse_args(argv)
    extra = [
        "Environment Variables:",
        "  REGISTRY         - Container registry (default: ghcr.io)",
        "  IMAGE_NAMESPACE  - Registry namespace",
        "  TAG              - Image tag (default: latest)",
        "  PUSH             - Push images after build (default: false)",
        "  GITHUB_TOKEN     - GitHub token for GHCR authentication",
    ]
    if args.command not in IMAGE_COMMANDS:
        return _usage(parser, IMAGE_COMMANDS, extra)

    config = load_config(args.config)
    builder = ImageBuilder(config.images)
    if args.command == "build" and args.target not in (None, "all", *builder.service_names):
        logger.error("Unknown service: %s", args.target)
        return _usage(parser, IMAGE_COMMANDS, extra)
    if args.command == "tag" and not args.target:
        return _usage(parser, IMAGE_COMMANDS, extra)

    logger.info("Registry: %s", config.images.registry)
    logger.info("Namespace: %s", config.images.namespace)
    logger.info("Tag: %s", config.images.tag)
    logger.info("Push: %s", str(config.images.push).lower())

    def action() -> None:
        if args.command == "build":
            builder.build(args.target or "all")
        elif args.command == "compose":
            builder.build_compose()
        elif args.command == "scan":
            builder.scan()
        elif args.command == "tag":
            builder.tag(args.target)
        elif args.command == "push":
            builder.push()
        elif args.command == "info":
            builder.show_info()

    return _run(action)
