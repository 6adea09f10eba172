"""Entry points for the stack-deployer CLIs."""

from __future__ import annotations

import sys

from .cli import run_deploy_cli, run_images_cli, run_infra_cli


def infra_main() -> None:
    sys.exit(run_infra_cli())


def deploy_main() -> None:
    sys.exit(run_deploy_cli())


def images_main() -> None:
    sys.exit(run_images_cli())


if __name__ == "__main__":  # pragma: no cover
    deploy_main()
