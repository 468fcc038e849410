"""
Rollback execution.

RollbackExecutor.apply runs a RollbackPlan in the only order the plan
allows: every structural operation (delete/undelete) first, then the field
restores.

- A failing structural operation aborts the plan before any field restore.
- A failing field restore is reported and the remaining restores still run;
  restores of different records are independent.

SqlRollbackExecutor runs the whole plan in one database transaction. An
aborted plan is rolled back entirely; each field restore runs in its own
SAVEPOINT so one failed restore does not undo the others.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.database import get_session
from services import content_schema
from services.history_log import log_delete, log_insert, log_update
from services.history_types import FieldMap, RecordRef, RollbackPlan, StructuralOp

logger = logging.getLogger(__name__)

OPERATION_RESTORE = "restore"


@dataclass(frozen=True)
class OperationFailure:
    """One operation of a plan that could not be applied."""

    record: RecordRef
    operation: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"record": str(self.record), "operation": self.operation, "error": self.error}


@dataclass
class ExecutionReport:
    """Outcome of applying a plan, per operation."""

    applied: list[tuple[RecordRef, str]] = field(default_factory=list)
    failures: list[OperationFailure] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "applied": [{"record": str(record), "operation": op} for record, op in self.applied],
            "failures": [failure.to_dict() for failure in self.failures],
            "aborted": self.aborted,
        }


class RollbackExecutor(ABC):
    """
    Applies rollback plans against a data store.

    Subclasses implement the three primitive operations and may wrap a
    plan in a transaction by overriding ``transaction``. Every primitive
    must be idempotent by record identity.
    """

    @abstractmethod
    async def delete_record(self, record: RecordRef) -> None: ...

    @abstractmethod
    async def undelete_record(self, record: RecordRef) -> None: ...

    @abstractmethod
    async def restore_fields(self, record: RecordRef, fields: FieldMap) -> None: ...

    @asynccontextmanager
    async def transaction(self, report: ExecutionReport) -> AsyncIterator[None]:
        """Unit of work around one plan. The default runs without one."""
        yield

    async def apply(self, plan: RollbackPlan) -> ExecutionReport:
        """Apply ``plan``: structural operations first, then field restores."""
        report = ExecutionReport()
        if plan.is_empty:
            return report

        async with self.transaction(report):
            for operation in plan.structural_ops:
                try:
                    if operation.op is StructuralOp.DELETE:
                        await self.delete_record(operation.record)
                    else:
                        await self.undelete_record(operation.record)
                except Exception as e:
                    logger.error(
                        f"[Rollback] {operation.op.value} of {operation.record} failed: {e}"
                    )
                    report.failures.append(
                        OperationFailure(operation.record, operation.op.value, str(e))
                    )
                    report.aborted = True
                    break
                report.applied.append((operation.record, operation.op.value))

            if report.aborted:
                logger.warning("[Rollback] Structural operation failed, skipping field restores")
                return report

            deleted = {
                operation.record
                for operation in plan.structural_ops
                if operation.op is StructuralOp.DELETE
            }
            for operation in plan.field_ops:
                if operation.record in deleted:
                    continue
                try:
                    await self.restore_fields(operation.record, operation.fields)
                except Exception as e:
                    logger.error(f"[Rollback] Restore of {operation.record} failed: {e}")
                    report.failures.append(
                        OperationFailure(operation.record, OPERATION_RESTORE, str(e))
                    )
                    continue
                report.applied.append((operation.record, OPERATION_RESTORE))

        logger.info(
            "[Rollback] Applied %d operation(s), %d failure(s)",
            len(report.applied),
            len(report.failures),
        )
        return report


class SqlRollbackExecutor(RollbackExecutor):
    """
    Applies plans to the content tables through SQLAlchemy.

    Deletes are soft deletes (``deleted`` flag). Every change is written to
    the history log as well, so a rollback can be rolled back in turn.

    One instance applies one plan at a time.
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._user_id = user_id
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    @asynccontextmanager
    async def transaction(self, report: ExecutionReport) -> AsyncIterator[None]:
        async with get_session(self._session_factory) as session:
            self._session = session
            try:
                yield
                if report.aborted:
                    await session.rollback()
                    logger.info("[Rollback] Plan aborted, transaction rolled back")
                else:
                    await session.commit()
            finally:
                self._session = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("SqlRollbackExecutor used outside of apply()")
        return self._session

    async def _load(self, record: RecordRef) -> Any:
        model_class = content_schema.get_model(record.table)
        instance = await self.session.get(model_class, record.id)
        if instance is None:
            raise LookupError(f"Record {record} not found")
        return instance

    async def delete_record(self, record: RecordRef) -> None:
        instance = await self._load(record)
        if instance.deleted:
            logger.debug(f"[Rollback] {record} already deleted")
            return
        instance.deleted = True
        instance.updated_at = datetime.now(timezone.utc)
        await log_delete(self.session, record, self._user_id)
        logger.debug(f"[Rollback] Deleted {record}")

    async def undelete_record(self, record: RecordRef) -> None:
        instance = await self._load(record)
        if not instance.deleted:
            logger.debug(f"[Rollback] {record} is not deleted")
            return
        instance.deleted = False
        instance.updated_at = datetime.now(timezone.utc)
        await log_insert(self.session, record, self._user_id)
        logger.debug(f"[Rollback] Undeleted {record}")

    async def restore_fields(self, record: RecordRef, fields: FieldMap) -> None:
        allowed = content_schema.restorable_fields(record.table)
        async with self.session.begin_nested():
            instance = await self._load(record)
            if instance.deleted:
                raise LookupError(f"Record {record} is deleted")

            old_fields: FieldMap = {}
            new_fields: FieldMap = {}
            for field_name, value in fields.items():
                if field_name not in allowed:
                    logger.debug(f"[Rollback] Skipping non-restorable field {record}:{field_name}")
                    continue
                current = getattr(instance, field_name)
                if current == value:
                    continue
                old_fields[field_name] = current
                new_fields[field_name] = value
                setattr(instance, field_name, value)

            if new_fields:
                instance.updated_at = datetime.now(timezone.utc)
                await log_update(self.session, record, old_fields, new_fields, self._user_id)
                logger.debug(f"[Rollback] Restored {record} fields={sorted(new_fields)}")
