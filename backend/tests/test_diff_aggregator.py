import itertools

from services.diff_aggregator import aggregate
from services.history_types import (
    ChangeLog,
    RecordRef,
    SnapshotEvent,
    StructuralEvent,
    StructuralKind,
)

PAGE = RecordRef("pages", 1)
ELEMENT = RecordRef("content_elements", 10)


def _log(*events) -> ChangeLog:
    """Change log from events given newest first; sequences are assigned downwards."""
    numbered = []
    for offset, event in enumerate(events):
        sequence = len(events) - offset
        if isinstance(event, SnapshotEvent):
            numbered.append(SnapshotEvent(sequence, event.record, event.old_fields, event.new_fields))
        else:
            numbered.append(StructuralEvent(sequence, event.record, event.kind))
    return ChangeLog(events=tuple(numbered))


def _snapshot(record: RecordRef, old: dict, new: dict) -> SnapshotEvent:
    return SnapshotEvent(0, record, old, new)


def _insert(record: RecordRef) -> StructuralEvent:
    return StructuralEvent(0, record, StructuralKind.INSERT)


def _delete(record: RecordRef) -> StructuralEvent:
    return StructuralEvent(0, record, StructuralKind.DELETE)


def test_simple_field_edit() -> None:
    diff = aggregate(_log(_snapshot(PAGE, {"title": "A"}, {"title": "B"})))

    assert diff.field_delta == {PAGE: {"title": "A"}}
    assert diff.current_fields == {PAGE: {"title": "B"}}
    assert diff.structural_delta == {}


def test_multi_step_edit_collapses_to_oldest_value() -> None:
    diff = aggregate(
        _log(
            _snapshot(PAGE, {"title": "B"}, {"title": "C"}),
            _snapshot(PAGE, {"title": "A"}, {"title": "B"}),
        )
    )

    assert diff.field_delta == {PAGE: {"title": "A"}}
    assert diff.current_fields == {PAGE: {"title": "C"}}


def test_partial_snapshots_merge_field_by_field() -> None:
    diff = aggregate(
        _log(
            _snapshot(PAGE, {"title": "B"}, {"title": "C"}),
            _snapshot(PAGE, {"slug": "/a"}, {"slug": "/b"}),
            _snapshot(PAGE, {"title": "A"}, {"title": "B"}),
        )
    )

    assert diff.field_delta == {PAGE: {"title": "A", "slug": "/a"}}


def test_field_changed_back_is_not_in_delta() -> None:
    diff = aggregate(
        _log(
            _snapshot(PAGE, {"title": "B", "slug": "/b"}, {"title": "A", "slug": "/c"}),
            _snapshot(PAGE, {"title": "A", "slug": "/a"}, {"title": "B", "slug": "/b"}),
        )
    )

    assert diff.field_delta == {PAGE: {"slug": "/a"}}


def test_record_with_only_noop_changes_is_dropped() -> None:
    diff = aggregate(
        _log(
            _snapshot(PAGE, {"title": "B"}, {"title": "A"}),
            _snapshot(PAGE, {"title": "A"}, {"title": "B"}),
        )
    )

    assert diff.field_delta == {}
    assert diff.is_empty


def test_insert_yields_structural_entry_only() -> None:
    diff = aggregate(
        _log(
            _snapshot(ELEMENT, {"header": "Draft"}, {"header": "Final"}),
            _insert(ELEMENT),
        )
    )

    assert diff.structural_delta == {ELEMENT: 1}
    assert ELEMENT not in diff.field_delta


def test_delete_yields_negative_structural_entry() -> None:
    diff = aggregate(_log(_delete(ELEMENT)))

    assert diff.structural_delta == {ELEMENT: -1}
    assert diff.field_delta == {}


def test_insert_edit_delete_round_trip_leaves_nothing() -> None:
    diff = aggregate(
        _log(
            _delete(ELEMENT),
            _snapshot(ELEMENT, {"a": 1}, {"a": 2}),
            _insert(ELEMENT),
        )
    )

    assert ELEMENT not in diff.structural_delta
    assert ELEMENT not in diff.field_delta
    assert diff.is_empty


def test_deleted_and_reinserted_record_keeps_field_continuity() -> None:
    diff = aggregate(
        _log(
            _snapshot(ELEMENT, {"header": "Restored"}, {"header": "Changed"}),
            _insert(ELEMENT),
            _delete(ELEMENT),
            _snapshot(ELEMENT, {"header": "Original"}, {"header": "Restored"}),
        )
    )

    assert ELEMENT not in diff.structural_delta
    assert diff.field_delta == {ELEMENT: {"header": "Original"}}


def test_non_restorable_fields_are_filtered() -> None:
    diff = aggregate(
        _log(_snapshot(PAGE, {"title": "A", "media": [1]}, {"title": "B", "media": [2]})),
        is_restorable=lambda table, field_name: field_name != "media",
    )

    assert diff.field_delta == {PAGE: {"title": "A"}}
    assert diff.current_fields == {PAGE: {"title": "B"}}


def test_records_are_aggregated_independently() -> None:
    diff = aggregate(
        _log(
            _snapshot(ELEMENT, {"header": "x"}, {"header": "y"}),
            _delete(PAGE),
            _snapshot(PAGE, {"title": "A"}, {"title": "B"}),
        )
    )

    assert diff.structural_delta == {PAGE: -1}
    assert diff.field_delta == {ELEMENT: {"header": "x"}}
    assert diff.records() == [PAGE, ELEMENT]


def test_empty_log_gives_empty_diff() -> None:
    diff = aggregate(ChangeLog())

    assert diff.is_empty
    assert diff.records() == []


def test_structural_delta_never_holds_zero_counters() -> None:
    kinds = (_insert, _delete)
    for length in range(1, 5):
        for combination in itertools.product(kinds, repeat=length):
            diff = aggregate(_log(*(make(PAGE) for make in combination)))
            assert 0 not in diff.structural_delta.values(), combination
