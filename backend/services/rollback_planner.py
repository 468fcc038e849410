"""
Rollback planning: the part of an aggregated diff selected by a scope,
turned into ordered operations. Pure; nothing is executed here.
"""

from __future__ import annotations

import logging

from services.history_types import (
    AggregatedDiff,
    FieldMap,
    FieldOperation,
    RecordRef,
    RollbackPlan,
    Scope,
    ScopeKind,
    StructuralOp,
    StructuralOperation,
)

logger = logging.getLogger(__name__)


def plan(diff: AggregatedDiff, scope: Scope) -> RollbackPlan:
    """
    Build the rollback plan for ``scope``.

    - Net inserted records are deleted, net deleted records are undeleted.
    - A field scope never yields structural operations.
    - Records with a structural operation get no field operation: a record
      about to be deleted needs no restore, and a record about to be
      undeleted is restored by a later plan once it exists again.
    """
    structural_delta = _select_structural(diff, scope)
    field_delta = _select_fields(diff, scope)

    structural_ops: list[StructuralOperation] = []
    for record, count in structural_delta.items():
        op = StructuralOp.DELETE if count > 0 else StructuralOp.UNDELETE
        structural_ops.append(StructuralOperation(record=record, op=op))

    touched = {operation.record for operation in structural_ops}
    field_ops = [
        FieldOperation(record=record, fields=fields)
        for record, fields in field_delta.items()
        if record not in touched
    ]

    logger.debug(
        "[RollbackPlanner] scope=%s -> %d structural, %d field op(s)",
        scope,
        len(structural_ops),
        len(field_ops),
    )
    return RollbackPlan(structural_ops=tuple(structural_ops), field_ops=tuple(field_ops))


def _select_structural(diff: AggregatedDiff, scope: Scope) -> dict[RecordRef, int]:
    kind = scope.kind
    if kind is ScopeKind.ALL:
        return dict(diff.structural_delta)
    if kind is ScopeKind.RECORD and scope.record in diff.structural_delta:
        return {scope.record: diff.structural_delta[scope.record]}
    return {}


def _select_fields(diff: AggregatedDiff, scope: Scope) -> dict[RecordRef, FieldMap]:
    kind = scope.kind
    if kind is ScopeKind.ALL:
        return {record: dict(fields) for record, fields in diff.field_delta.items()}

    fields = diff.field_delta.get(scope.record)
    if not fields:
        return {}
    if kind is ScopeKind.RECORD:
        return {scope.record: dict(fields)}
    if scope.field_name in fields:
        return {scope.record: {scope.field_name: fields[scope.field_name]}}
    return {}
