"""
Value types shared by the record history engine.

Everything here is an immutable, request-scoped value: change logs, diffs
and rollback plans are recomputed on every request and never cached.

Records are identified by ``RecordRef(table, id)``. The ``"table:id"``
string form exists only for display and for parsing user input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Union

# Field name -> opaque stored value. Values are only compared with ``==``.
FieldMap = dict[str, Any]

ELEMENT_PATTERN = re.compile(r"^[a-z0-9_.]+:[0-9]+$", re.IGNORECASE)
SCOPE_PATTERN = re.compile(r"^[a-z0-9_.]+(:[0-9]+(:[a-z0-9_.]+)?)?$", re.IGNORECASE)
SCOPE_ALL = "all"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HistoryError(Exception):
    """Base class for record history errors."""


class UnknownSchemaError(HistoryError, ValueError):
    """History was requested for a table the event source does not know."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Unknown table: {table}")
        self.table = table


class MalformedEventError(HistoryError):
    """A stored event could not be decoded into field maps."""

    def __init__(self, sequence: int, reason: str) -> None:
        super().__init__(f"Malformed history event {sequence}: {reason}")
        self.sequence = sequence
        self.reason = reason


class InvalidElementReferenceError(HistoryError, ValueError):
    """An element or rollback scope string does not match the accepted syntax."""


# ---------------------------------------------------------------------------
# Records and events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class RecordRef:
    """Identity of one record: table name plus numeric id."""

    table: str
    id: int

    def __str__(self) -> str:
        return f"{self.table}:{self.id}"

    @classmethod
    def parse(cls, element: str) -> RecordRef:
        """Parse ``"table:id"``; raises InvalidElementReferenceError otherwise."""
        if not element or not ELEMENT_PATTERN.match(element):
            raise InvalidElementReferenceError(f"Invalid element reference: {element!r}")
        table, uid = element.split(":")
        return cls(table=table, id=int(uid))


class StructuralKind(Enum):
    """Structural actions recorded in the log."""

    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True)
class SnapshotEvent:
    """One logged modification: the changed fields before and after."""

    sequence: int
    record: RecordRef
    old_fields: FieldMap
    new_fields: FieldMap
    recorded_by: str | None = None
    recorded_at: datetime | None = None
    is_snapshot_mark: bool = False
    history_id: int | None = None


@dataclass(frozen=True)
class StructuralEvent:
    """One logged insert or delete of a record."""

    sequence: int
    record: RecordRef
    kind: StructuralKind
    recorded_at: datetime | None = None
    recorded_by: str | None = None


@dataclass(frozen=True)
class MalformedEvent:
    """Placeholder an event source emits for a row it could not decode."""

    sequence: int
    record: RecordRef
    reason: str


Event = Union[SnapshotEvent, StructuralEvent]


@dataclass(frozen=True)
class ChangeLog:
    """
    Events for one or more records, newest first.

    ``boundary_sequence`` is the point the log does not look behind: every
    event in the log has a greater sequence. ``malformed_count`` counts
    events that were skipped because they could not be decoded.
    """

    events: tuple[Event, ...] = ()
    boundary_sequence: int | None = None
    malformed_count: int = 0

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)

    @property
    def is_empty(self) -> bool:
        return not self.events

    def records(self) -> list[RecordRef]:
        """Records touched by the log, in order of their newest event."""
        seen: dict[RecordRef, None] = {}
        for event in self.events:
            seen.setdefault(event.record, None)
        return list(seen)


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregatedDiff:
    """
    Net effect of a change log.

    structural_delta: record -> +1 (net inserted) or -1 (net deleted).
    field_delta: record -> {field: value to restore}, only for fields whose
        oldest value differs from their newest value.
    current_fields: record -> {field: newest value} for the same fields.
    """

    structural_delta: dict[RecordRef, int] = field(default_factory=dict)
    field_delta: dict[RecordRef, FieldMap] = field(default_factory=dict)
    current_fields: dict[RecordRef, FieldMap] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.structural_delta and not self.field_delta

    def records(self) -> list[RecordRef]:
        """Every record with a structural or field entry."""
        seen: dict[RecordRef, None] = dict.fromkeys(self.structural_delta)
        for record in self.field_delta:
            seen.setdefault(record, None)
        return list(seen)


# ---------------------------------------------------------------------------
# Scope and plan
# ---------------------------------------------------------------------------


class ScopeKind(Enum):
    ALL = "all"
    RECORD = "record"
    FIELD = "field"


@dataclass(frozen=True)
class Scope:
    """Which part of a diff a rollback covers: everything, one record, or one field."""

    record: RecordRef | None = None
    field_name: str | None = None

    def __post_init__(self) -> None:
        if self.field_name is not None and self.record is None:
            raise ValueError("A field scope needs a record")

    @property
    def kind(self) -> ScopeKind:
        if self.record is None:
            return ScopeKind.ALL
        if self.field_name is None:
            return ScopeKind.RECORD
        return ScopeKind.FIELD

    @classmethod
    def all(cls) -> Scope:
        return cls()

    @classmethod
    def for_record(cls, record: RecordRef) -> Scope:
        return cls(record=record)

    @classmethod
    def for_field(cls, record: RecordRef, field_name: str) -> Scope:
        return cls(record=record, field_name=field_name)

    @classmethod
    def parse(cls, value: str) -> Scope:
        """
        Parse a rollback scope string.

        Accepted forms: ``all``, ``table:id`` and ``table:id:field``.
        """
        if not value or not SCOPE_PATTERN.match(value):
            raise InvalidElementReferenceError(f"Invalid rollback scope: {value!r}")
        parts = value.split(":")
        if len(parts) == 1:
            if parts[0].lower() != SCOPE_ALL:
                raise InvalidElementReferenceError(f"Invalid rollback scope: {value!r}")
            return cls.all()
        record = RecordRef(table=parts[0], id=int(parts[1]))
        if len(parts) == 2:
            return cls.for_record(record)
        return cls.for_field(record, parts[2])

    def __str__(self) -> str:
        if self.record is None:
            return SCOPE_ALL
        if self.field_name is None:
            return str(self.record)
        return f"{self.record}:{self.field_name}"


class StructuralOp(Enum):
    DELETE = "delete"
    UNDELETE = "undelete"


@dataclass(frozen=True)
class StructuralOperation:
    record: RecordRef
    op: StructuralOp


@dataclass(frozen=True)
class FieldOperation:
    record: RecordRef
    fields: FieldMap


@dataclass(frozen=True)
class RollbackPlan:
    """
    Ordered operations that undo a diff within a scope.

    Executors run every structural operation before any field operation.
    """

    structural_ops: tuple[StructuralOperation, ...] = ()
    field_ops: tuple[FieldOperation, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.structural_ops and not self.field_ops

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "structural_ops": [
                {"record": str(op.record), "op": op.op.value} for op in self.structural_ops
            ],
            "field_ops": [
                {"record": str(op.record), "fields": dict(op.fields)} for op in self.field_ops
            ],
        }
