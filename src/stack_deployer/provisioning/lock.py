"""Scoped state lock backed by the DynamoDB lock table.

The lock is acquired before every mutating provisioning operation and released
when the ``with`` block exits normally or with an error. An interrupt
(``KeyboardInterrupt``, ``SystemExit``) leaves the lock held. A record left behind by an
interrupted run is reported (with its age) and only removed through
:meth:`LockStore.force_release`, never automatically.
"""

from __future__ import annotations

import getpass
import json
import logging
import socket
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from ..errors import BackendUnreachableError, DeployerError, LockHeldError, LockLostError
from .models import LockRecord, StateHandle

if TYPE_CHECKING:
    from ..local import LocalSession

logger = logging.getLogger(__name__)

_CONDITIONAL_FAILURE = "ConditionalCheckFailedException"


class LockStore(ABC):
    """Storage for lock records keyed by lock id."""

    @abstractmethod
    def try_acquire(self, record: LockRecord) -> Optional[LockRecord]:
        """Store ``record`` if no record exists. Returns the current holder on conflict."""

    @abstractmethod
    def read(self, lock_id: str) -> Optional[LockRecord]:
        """Return the current record, if any."""

    @abstractmethod
    def release(self, lock_id: str, owner: str) -> bool:
        """Delete the record only if ``owner`` still holds it."""

    @abstractmethod
    def force_release(self, lock_id: str) -> Optional[LockRecord]:
        """Delete the record unconditionally, returning what was removed."""


class DynamoDBLockStore(LockStore):
    """Lock records in the backend's DynamoDB table, driven through the AWS CLI."""

    def __init__(self, session: "LocalSession", table: str, region: str) -> None:
        self.session = session
        self.table = table
        self.region = region

    def _base(self, action: str) -> list:
        return [
            "aws", "dynamodb", action,
            "--table-name", self.table,
            "--region", self.region,
            "--output", "json",
        ]

    @staticmethod
    def _key(lock_id: str) -> str:
        return json.dumps({"LockID": {"S": lock_id}})

    def try_acquire(self, record: LockRecord) -> Optional[LockRecord]:
        item = {
            "LockID": {"S": record.lock_id},
            "Owner": {"S": record.owner},
            "Info": {"S": record.to_json()},
        }
        result = self.session.run(
            self._base("put-item")
            + ["--item", json.dumps(item), "--condition-expression", "attribute_not_exists(LockID)"]
        )
        if result.ok:
            return None
        if _CONDITIONAL_FAILURE in result.stderr:
            holder = self.read(record.lock_id)
            if holder is None:
                # 释放与获取之间的竞争，视为占用者未知
                holder = LockRecord(record.lock_id, "unknown", "unknown", "unknown", record.created_at)
            return holder
        raise BackendUnreachableError(f"Cannot write lock record to {self.table}: {result.stderr}")

    def read(self, lock_id: str) -> Optional[LockRecord]:
        result = self.session.run(
            self._base("get-item") + ["--key", self._key(lock_id), "--consistent-read"]
        )
        if not result.ok:
            raise BackendUnreachableError(f"Cannot read lock table {self.table}: {result.stderr}")
        if not result.stdout:
            return None
        item = json.loads(result.stdout).get("Item")
        if not item:
            return None
        return LockRecord.from_json(item["Info"]["S"])

    def release(self, lock_id: str, owner: str) -> bool:
        result = self.session.run(
            self._base("delete-item")
            + [
                "--key", self._key(lock_id),
                "--condition-expression", "#o = :owner",
                "--expression-attribute-names", json.dumps({"#o": "Owner"}),
                "--expression-attribute-values", json.dumps({":owner": {"S": owner}}),
            ]
        )
        if result.ok:
            return True
        if _CONDITIONAL_FAILURE in result.stderr:
            return False
        raise BackendUnreachableError(f"Cannot release lock in {self.table}: {result.stderr}")

    def force_release(self, lock_id: str) -> Optional[LockRecord]:
        existing = self.read(lock_id)
        if existing is None:
            return None
        result = self.session.run(self._base("delete-item") + ["--key", self._key(lock_id)])
        if not result.ok:
            raise BackendUnreachableError(f"Cannot delete lock in {self.table}: {result.stderr}")
        return existing


def _who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class StateLock:
    """Context manager holding the state lock for one mutating operation."""

    def __init__(
        self,
        store: LockStore,
        handle: StateHandle,
        operation: str,
        stale_after: float = 3600,
    ) -> None:
        self.store = store
        self.handle = handle
        self.operation = operation
        self.stale_after = stale_after
        self.record: Optional[LockRecord] = None

    @property
    def held(self) -> bool:
        return self.record is not None

    def __enter__(self) -> "StateLock":
        record = LockRecord(
            lock_id=self.handle.lock_id,
            owner=uuid.uuid4().hex,
            operation=self.operation,
            who=_who(),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        holder = self.store.try_acquire(record)
        if holder is not None:
            raise LockHeldError(holder, stale=holder.is_stale(self.stale_after))
        self.record = record
        logger.info("🔒 Acquired state lock %s for %s", record.lock_id, self.operation)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        record, self.record = self.record, None
        if record is None:
            return
        if exc_type is not None and not issubclass(exc_type, Exception):
            # 被中断（Ctrl-C / SystemExit）时远端状态未知，锁必须保留
            logger.error(
                "Interrupted during %s; state lock %s stays held. Inspect the state, then clear it with the unlock command",
                self.operation,
                record.lock_id,
            )
            return
        if exc_type is None:
            released = self.store.release(record.lock_id, record.owner)
        else:
            try:
                released = self.store.release(record.lock_id, record.owner)
            except DeployerError as release_error:
                logger.error("Could not release state lock %s: %s", record.lock_id, release_error)
                return
        if released:
            logger.info("🔓 Released state lock %s", record.lock_id)
            return
        logger.error("State lock %s was removed by someone else while %s held it", record.lock_id, self.operation)
        if exc_type is None:
            raise LockLostError(f"State lock {record.lock_id} lost during {self.operation}")
