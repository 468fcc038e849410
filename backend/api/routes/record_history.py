"""
API routes for record history.

Provides endpoints to:
- List the change history of a record (optionally with its sub records)
- Preview the merged difference since a log sequence
- Roll back all records, one record or one field
- Revert the latest change of a record
- Resolve and mark/unmark history entries
"""
import logging
from typing import Any, Literal, Optional, Union

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ValidationError

from services import record_history as history_service
from services.history_types import (
    InvalidElementReferenceError,
    Scope,
    UnknownSchemaError,
)
from services.record_history import HistoryViewState


router = APIRouter(prefix="/history", tags=["history"])
logger = logging.getLogger(__name__)


class ViewOptions(BaseModel):
    """View options shared by history requests. Unset options use the configured defaults."""
    since_sequence: Optional[int] = None
    max_steps: Union[int, Literal["all", "marked"], None] = None
    show_diff: Optional[bool] = None
    show_sub_elements: Optional[bool] = None
    show_insert_delete: Optional[bool] = None


class RollbackRequest(ViewOptions):
    """Request to roll back part of the merged difference."""
    scope: str = "all"


class RevertRequest(BaseModel):
    """Request to revert the latest change of a record."""
    field: Optional[str] = None


class SnapshotMarkResponse(BaseModel):
    """Response for the snapshot mark toggle."""
    history_id: int
    snapshot: bool


def _view_state(element: str, **options: Any) -> HistoryViewState:
    """Build a view state, leaving unset options at their configured defaults."""
    values: dict[str, Any] = {key: value for key, value in options.items() if value is not None}
    if values.get("max_steps") == "all":
        values["max_steps"] = None
    try:
        return HistoryViewState(element=element, **values)
    except ValidationError as e:
        logger.warning("[record_history] Invalid view state for %s: %s", element, e)
        raise HTTPException(status_code=400, detail="Invalid history request")


def _parse_scope(value: str) -> Scope:
    try:
        return Scope.parse(value)
    except InvalidElementReferenceError as e:
        logger.warning("[record_history] %s", e)
        raise HTTPException(status_code=400, detail=str(e))


def _unknown_table(e: UnknownSchemaError) -> HTTPException:
    logger.warning("[record_history] %s", e)
    return HTTPException(status_code=404, detail=str(e))


@router.get("/entries/{history_id}")
async def get_history_entry_diff(history_id: int) -> dict[str, Any]:
    """
    Merged difference from history entry ``history_id`` up to now.
    """
    state = await history_service.record_history.resolve_history_entry(history_id)
    if state is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    try:
        return await history_service.record_history.preview_rollback(state)
    except UnknownSchemaError as e:
        raise _unknown_table(e)


@router.post("/entries/{history_id}/snapshot", response_model=SnapshotMarkResponse)
async def toggle_snapshot_mark(history_id: int) -> SnapshotMarkResponse:
    """Mark or unmark a history entry as restore point."""
    snapshot = await history_service.record_history.toggle_snapshot_mark(history_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return SnapshotMarkResponse(history_id=history_id, snapshot=snapshot)


@router.get("/{element}")
async def get_history(
    element: str,
    since_sequence: Optional[int] = Query(None),
    max_steps: Optional[str] = Query(None),
    show_diff: Optional[bool] = Query(None),
    show_sub_elements: Optional[bool] = Query(None),
    show_insert_delete: Optional[bool] = Query(None),
) -> dict[str, Any]:
    """
    Change history of ``element`` (``table:id``), newest first.

    ``max_steps`` is a number, ``all`` or ``marked``.
    """
    state = _view_state(
        element,
        since_sequence=since_sequence,
        max_steps=max_steps,
        show_diff=show_diff,
        show_sub_elements=show_sub_elements,
        show_insert_delete=show_insert_delete,
    )
    try:
        return await history_service.record_history.get_history(state)
    except UnknownSchemaError as e:
        raise _unknown_table(e)


@router.get("/{element}/diff")
async def get_history_diff(
    element: str,
    since_sequence: Optional[int] = Query(None),
    scope: Optional[str] = Query(None),
    show_sub_elements: Optional[bool] = Query(None),
    show_insert_delete: Optional[bool] = Query(None),
) -> dict[str, Any]:
    """
    Rollback preview: the merged difference since ``since_sequence``,
    turned around to show what a rollback would do.
    """
    state = _view_state(
        element,
        since_sequence=since_sequence,
        show_sub_elements=show_sub_elements,
        show_insert_delete=show_insert_delete,
    )
    parsed_scope = _parse_scope(scope) if scope else None
    try:
        return await history_service.record_history.preview_rollback(state, parsed_scope)
    except UnknownSchemaError as e:
        raise _unknown_table(e)


@router.post("/{element}/rollback")
async def rollback(
    element: str,
    request: RollbackRequest,
    user_id: Optional[str] = Query(None),
) -> dict[str, Any]:
    """
    Roll back ``request.scope`` (``all``, ``table:id`` or ``table:id:field``)
    of the merged difference of ``element``.
    """
    state = _view_state(element, **request.model_dump(exclude={"scope"}))
    scope = _parse_scope(request.scope)
    logger.info(
        "[record_history] Rollback requested for %s scope=%s since=%s by %s",
        element,
        scope,
        request.since_sequence,
        user_id,
    )
    try:
        return await history_service.record_history.apply_rollback(state, scope, user_id)
    except UnknownSchemaError as e:
        raise _unknown_table(e)


@router.post("/{element}/revert")
async def revert_latest(
    element: str,
    request: RevertRequest,
    user_id: Optional[str] = Query(None),
) -> dict[str, Any]:
    """Revert the latest change of ``element``, or of one of its fields."""
    try:
        return await history_service.record_history.revert_latest(element, request.field, user_id)
    except InvalidElementReferenceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UnknownSchemaError as e:
        raise _unknown_table(e)
