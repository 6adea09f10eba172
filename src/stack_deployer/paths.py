"""Unified path constants for stack-deployer.

Everything the orchestrator writes lives under the Terraform directory:
- <terraform_dir>/backups/<timestamp>/   # state snapshots taken by `backup`
- <terraform_dir>/tfplan                 # saved plan consumed by `apply`
"""

from datetime import datetime
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("config/default_config.json")

PLAN_FILE_NAME = "tfplan"
TFVARS_FILE_NAME = "terraform.tfvars"
LOCAL_STATE_FILE_NAME = "terraform.tfstate"
BACKUPS_DIR_NAME = "backups"


def backup_dir_for(terraform_dir: Path, moment: datetime) -> Path:
    """Return (and create) the timestamped backup directory for ``moment``."""
    target = Path(terraform_dir) / BACKUPS_DIR_NAME / moment.strftime("%Y%m%d-%H%M%S")
    target.mkdir(parents=True, exist_ok=True)
    return target
