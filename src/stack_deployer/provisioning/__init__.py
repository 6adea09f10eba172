"""Provisioning lifecycle: remote state backend, state lock and Terraform driver.

- ProvisioningController: init → validate → plan → apply → outputs for one environment
- StateLock/LockStore: scoped mutual exclusion over the DynamoDB lock table
- TerraformRunner: terraform CLI calls and JSON output parsing
- ClusterBootstrapper: kubeconfig and cluster add-ons after apply
"""

from .models import (
    ProvisioningState,
    StateHandle,
    LockRecord,
    StateVersion,
    ProvisioningPlan,
    ApplyEvents,
    OutputValue,
    InfrastructureOutputs,
)
from .lock import LockStore, DynamoDBLockStore, StateLock
from .backend import StateBackend
from .terraform import TerraformRunner, parse_apply_events, parse_validate_diagnostics
from .cluster import ClusterBootstrapper
from .controller import ProvisioningController

__all__ = [
    "ProvisioningState",
    "StateHandle",
    "LockRecord",
    "StateVersion",
    "ProvisioningPlan",
    "ApplyEvents",
    "OutputValue",
    "InfrastructureOutputs",
    "LockStore",
    "DynamoDBLockStore",
    "StateLock",
    "StateBackend",
    "TerraformRunner",
    "parse_apply_events",
    "parse_validate_diagnostics",
    "ClusterBootstrapper",
    "ProvisioningController",
]
