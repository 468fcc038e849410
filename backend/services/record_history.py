"""
Record History Service.

Entry point for everything the history views do:
- List the history of a record (and of the records on a page)
- Preview what a rollback would change
- Apply a rollback for all records, one record or one field
- Revert the latest change of a record in one step
- Mark/unmark history entries as restore points

All view options travel in an explicit HistoryViewState; nothing is read
from or written to per-user session state.
"""

import logging
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings, to_iso8601
from services import content_schema, history_log
from services.change_log import ChangeLogBuilder
from services.diff_aggregator import IsRestorable, aggregate
from services.event_source import HistoryStore, SqlEventSource
from services.history_types import (
    ELEMENT_PATTERN,
    AggregatedDiff,
    ChangeLog,
    RecordRef,
    RollbackPlan,
    Scope,
    SnapshotEvent,
    StructuralEvent,
)
from services.rollback_executor import RollbackExecutor, SqlRollbackExecutor
from services.rollback_planner import plan as plan_rollback

logger = logging.getLogger(__name__)

MAX_STEPS_MARKED = "marked"

ExecutorFactory = Callable[[Optional[str]], RollbackExecutor]


class HistoryViewState(BaseModel):
    """
    View options of one history request.

    max_steps: number of most recent changes per record, None for all, or
        "marked" to list only entries pinned as restore points.
    since_sequence: only changes after this log sequence are considered.
    """

    element: str
    since_sequence: Optional[int] = None
    max_steps: Union[int, Literal["marked"], None] = Field(
        default_factory=lambda: settings.HISTORY_DEFAULT_MAX_STEPS
    )
    show_diff: bool = Field(default_factory=lambda: settings.HISTORY_SHOW_DIFF)
    show_sub_elements: bool = Field(default_factory=lambda: settings.HISTORY_SHOW_SUB_ELEMENTS)
    show_insert_delete: bool = Field(default_factory=lambda: settings.HISTORY_SHOW_INSERT_DELETE)

    @field_validator("element")
    @classmethod
    def _check_element(cls, value: str) -> str:
        if not ELEMENT_PATTERN.match(value):
            raise ValueError(f"Invalid element reference: {value!r}")
        return value

    @field_validator("max_steps")
    @classmethod
    def _check_max_steps(cls, value: Union[int, str, None]) -> Union[int, str, None]:
        if isinstance(value, int) and value <= 0:
            return None
        return value

    @property
    def record(self) -> RecordRef:
        return RecordRef.parse(self.element)

    @property
    def show_marked(self) -> bool:
        return self.max_steps == MAX_STEPS_MARKED

    @property
    def step_limit(self) -> Optional[int]:
        """Snapshot limit per record; marked mode looks at everything."""
        if isinstance(self.max_steps, int):
            return self.max_steps
        return None


class RecordHistory:
    """Builds, diffs and rolls back record histories."""

    def __init__(
        self,
        event_source: Optional[HistoryStore] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        is_restorable: Optional[IsRestorable] = content_schema.is_restorable,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._source: HistoryStore = event_source or SqlEventSource(session_factory)
        self._builder = ChangeLogBuilder(self._source)
        self._executor_factory: ExecutorFactory = executor_factory or (
            lambda user_id: SqlRollbackExecutor(user_id=user_id, session_factory=session_factory)
        )
        self._is_restorable = is_restorable

    # =========================================================================
    # Building blocks
    # =========================================================================

    async def build_change_log(self, state: HistoryViewState, for_diff: bool = False) -> ChangeLog:
        """
        Build the change log described by ``state``.

        With ``for_diff`` and a ``since_sequence`` the log covers every change
        after that sequence; the step limit only applies to listing and to
        diffs without a boundary.
        """
        root = state.record
        max_steps = state.step_limit
        if for_diff and state.since_sequence is not None:
            max_steps = None
        return await self._builder.build(
            root,
            include_descendants=state.show_sub_elements and content_schema.is_container(root.table),
            max_steps=max_steps,
            boundary_sequence=state.since_sequence,
            include_structural=state.show_insert_delete,
        )

    async def aggregate_diff(self, state: HistoryViewState) -> AggregatedDiff:
        """Aggregate the change log described by ``state`` into one diff."""
        change_log = await self.build_change_log(state, for_diff=True)
        return aggregate(change_log, self._is_restorable)

    async def plan_rollback(self, state: HistoryViewState, scope: Scope) -> RollbackPlan:
        """Plan (without applying) the rollback of ``scope``."""
        return plan_rollback(await self.aggregate_diff(state), scope)

    # =========================================================================
    # History display
    # =========================================================================

    async def get_history(self, state: HistoryViewState) -> dict[str, Any]:
        """
        List history entries, newest first.

        Each entry is either a structural action (insert/delete) or an update
        with its changed fields; with ``show_diff`` the old and new values are
        included as well.
        """
        change_log = await self.build_change_log(state)

        entries: list[dict[str, Any]] = []
        for event in change_log:
            if state.step_limit is not None and len(entries) >= state.step_limit:
                break
            if isinstance(event, StructuralEvent):
                if state.show_marked:
                    continue
                entries.append({
                    "sequence": event.sequence,
                    "record": str(event.record),
                    "recorded_at": to_iso8601(event.recorded_at),
                    "user_id": event.recorded_by,
                    "action": event.kind.value,
                })
                continue

            if state.show_marked and not event.is_snapshot_mark:
                continue
            entries.append(self._snapshot_entry(event, state.show_diff))

        return {
            "element": state.element,
            "since_sequence": state.since_sequence,
            "entries": entries,
            "malformed_count": change_log.malformed_count,
        }

    @staticmethod
    def _snapshot_entry(event: SnapshotEvent, show_diff: bool) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "sequence": event.sequence,
            "history_id": event.history_id,
            "record": str(event.record),
            "recorded_at": to_iso8601(event.recorded_at),
            "user_id": event.recorded_by,
            "action": "update",
            "fields": list(event.new_fields),
            "snapshot": event.is_snapshot_mark,
        }
        if show_diff:
            entry["diff"] = {
                name: {"old": event.old_fields.get(name), "new": value}
                for name, value in event.new_fields.items()
            }
        return entry

    # =========================================================================
    # Rollback
    # =========================================================================

    async def preview_rollback(
        self,
        state: HistoryViewState,
        scope: Optional[Scope] = None,
    ) -> dict[str, Any]:
        """
        Show what rolling back would do: per record the structural action
        and per field the current value next to the value it returns to.
        """
        diff = await self.aggregate_diff(state)

        records: list[dict[str, Any]] = []
        for record in diff.records():
            delta = diff.structural_delta.get(record, 0)
            current = diff.current_fields.get(record, {})
            records.append({
                "record": str(record),
                "action": "delete" if delta > 0 else "undelete" if delta < 0 else None,
                "fields": {
                    name: {"current": current.get(name), "restore": value}
                    for name, value in diff.field_delta.get(record, {}).items()
                },
            })

        result: dict[str, Any] = {
            "element": state.element,
            "since_sequence": state.since_sequence,
            "records": records,
        }
        if scope is not None:
            result["plan"] = plan_rollback(diff, scope).to_dict()
        return result

    async def apply_rollback(
        self,
        state: HistoryViewState,
        scope: Scope,
        user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Roll back ``scope`` of the diff described by ``state``.

        Returns a result dict; an empty plan is reported as
        ``nothing_to_rollback``, not as an error.
        """
        rollback_plan = await self.plan_rollback(state, scope)
        return await self._execute(rollback_plan, scope, user_id)

    async def revert_latest(
        self,
        element: str,
        field_name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Undo the most recent update of a record (or of one of its fields).

        Only that single update is considered: no sub records and no
        insert/delete actions.
        """
        record = RecordRef.parse(element)
        latest = await self._source.latest_snapshot_sequence(record)
        scope = Scope.for_field(record, field_name) if field_name else Scope.for_record(record)
        if latest is None:
            logger.info(f"[RecordHistory] Nothing to revert for {record}")
            return {"status": "nothing_to_rollback", "scope": str(scope), "plan": RollbackPlan().to_dict()}

        change_log = await self._builder.build(
            record,
            include_descendants=False,
            max_steps=None,
            boundary_sequence=latest - 1,
            include_structural=False,
        )
        rollback_plan = plan_rollback(aggregate(change_log, self._is_restorable), scope)
        return await self._execute(rollback_plan, scope, user_id)

    async def _execute(
        self,
        rollback_plan: RollbackPlan,
        scope: Scope,
        user_id: Optional[str],
    ) -> dict[str, Any]:
        if rollback_plan.is_empty:
            logger.info(f"[RecordHistory] Nothing to roll back for scope {scope}")
            return {"status": "nothing_to_rollback", "scope": str(scope), "plan": rollback_plan.to_dict()}

        executor = self._executor_factory(user_id)
        report = await executor.apply(rollback_plan)

        if report.aborted:
            status = "aborted"
        elif report.failures:
            status = "partial"
        else:
            status = "completed"

        logger.info(
            f"[RecordHistory] Rollback of {scope} {status}: "
            f"{len(report.applied)} applied, {len(report.failures)} failed"
        )
        return {
            "status": status,
            "scope": str(scope),
            "plan": rollback_plan.to_dict(),
            **report.to_dict(),
        }

    # =========================================================================
    # History entries
    # =========================================================================

    async def resolve_history_entry(
        self,
        history_id: int,
        base: Optional[HistoryViewState] = None,
    ) -> Optional[HistoryViewState]:
        """
        View state showing the diff from history entry ``history_id`` on.

        Returns None if the entry does not exist.
        """
        resolved = await self._source.resolve_history_entry(history_id)
        if resolved is None:
            return None
        record, boundary = resolved
        options = base.model_dump(exclude={"element", "since_sequence"}) if base else {}
        return HistoryViewState(element=str(record), since_sequence=boundary, **options)

    async def toggle_snapshot_mark(self, history_id: int) -> Optional[bool]:
        """Mark or unmark a history entry as restore point."""
        return await history_log.toggle_snapshot_mark(history_id, self._session_factory)


record_history = RecordHistory()
