"""Remote state backend: S3 state store plus DynamoDB lock table."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from ..errors import BackendProvisioningError
from ..utils.logging import get_logger, log_success
from .models import StateHandle

if TYPE_CHECKING:
    from ..local import LocalSession

logger = get_logger(__name__)

_ENCRYPTION_RULES = {
    "Rules": [
        {"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
    ]
}


class StateBackend:
    """Creates the state store and lock table if absent (idempotent)."""

    def __init__(self, session: "LocalSession") -> None:
        self.session = session

    def caller_identity_ok(self) -> bool:
        return self.session.run(["aws", "sts", "get-caller-identity"], timeout=60).ok

    def bucket_exists(self, handle: StateHandle) -> bool:
        return self.session.run(
            ["aws", "s3api", "head-bucket", "--bucket", handle.bucket, "--region", handle.region],
            timeout=60,
        ).ok

    def table_exists(self, handle: StateHandle) -> bool:
        return self.session.run(
            ["aws", "dynamodb", "describe-table", "--table-name", handle.lock_table, "--region", handle.region],
            timeout=60,
        ).ok

    def ensure(self, handle: StateHandle) -> None:
        self.ensure_bucket(handle)
        self.ensure_lock_table(handle)

    def ensure_bucket(self, handle: StateHandle) -> None:
        if self.bucket_exists(handle):
            logger.info("Terraform state bucket %s already exists", handle.bucket)
        else:
            logger.info("Creating S3 bucket %s for Terraform state...", handle.bucket)
            args = ["aws", "s3api", "create-bucket", "--bucket", handle.bucket, "--region", handle.region]
            # us-east-1 拒绝显式 LocationConstraint
            if handle.region != "us-east-1":
                args += ["--create-bucket-configuration", f"LocationConstraint={handle.region}"]
            result = self.session.run(args, timeout=120)
            if not result.ok and not self.bucket_exists(handle):
                raise BackendProvisioningError(
                    f"Failed to create state bucket {handle.bucket}: {result.stderr}"
                )
            log_success(logger, "Terraform state S3 bucket created")

        versioning = self.session.run(
            [
                "aws", "s3api", "put-bucket-versioning",
                "--bucket", handle.bucket,
                "--versioning-configuration", "Status=Enabled",
            ],
            timeout=60,
        )
        if not versioning.ok:
            raise BackendProvisioningError(f"Failed to enable versioning on {handle.bucket}: {versioning.stderr}")

        encryption = self.session.run(
            [
                "aws", "s3api", "put-bucket-encryption",
                "--bucket", handle.bucket,
                "--server-side-encryption-configuration", json.dumps(_ENCRYPTION_RULES),
            ],
            timeout=60,
        )
        if not encryption.ok:
            raise BackendProvisioningError(f"Failed to enable encryption on {handle.bucket}: {encryption.stderr}")

    def ensure_lock_table(self, handle: StateHandle) -> None:
        if self.table_exists(handle):
            logger.info("DynamoDB lock table %s already exists", handle.lock_table)
            return

        logger.info("Creating DynamoDB table %s for state locking...", handle.lock_table)
        result = self.session.run(
            [
                "aws", "dynamodb", "create-table",
                "--table-name", handle.lock_table,
                "--attribute-definitions", "AttributeName=LockID,AttributeType=S",
                "--key-schema", "AttributeName=LockID,KeyType=HASH",
                "--provisioned-throughput", "ReadCapacityUnits=5,WriteCapacityUnits=5",
                "--region", handle.region,
            ],
            timeout=120,
        )
        if not result.ok and not self.table_exists(handle):
            raise BackendProvisioningError(f"Failed to create lock table {handle.lock_table}: {result.stderr}")

        waited = self.session.run(
            ["aws", "dynamodb", "wait", "table-exists", "--table-name", handle.lock_table, "--region", handle.region],
            timeout=600,
        )
        if not waited.ok:
            raise BackendProvisioningError(f"Lock table {handle.lock_table} never became active: {waited.stderr}")
        log_success(logger, "DynamoDB table for state locking created")
