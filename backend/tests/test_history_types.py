import pytest

from services.history_types import (
    FieldOperation,
    InvalidElementReferenceError,
    RecordRef,
    RollbackPlan,
    Scope,
    ScopeKind,
    StructuralOp,
    StructuralOperation,
)


def test_record_ref_parses_element_reference() -> None:
    record = RecordRef.parse("content_elements:42")
    assert record == RecordRef("content_elements", 42)
    assert str(record) == "content_elements:42"


def test_record_refs_compare_structurally() -> None:
    assert RecordRef("pages", 1) == RecordRef("pages", 1)
    assert len({RecordRef("pages", 1), RecordRef("pages", 1), RecordRef("pages", 2)}) == 2
    assert sorted([RecordRef("pages", 2), RecordRef("content_elements", 9), RecordRef("pages", 1)]) == [
        RecordRef("content_elements", 9),
        RecordRef("pages", 1),
        RecordRef("pages", 2),
    ]


@pytest.mark.parametrize("element", ["", "pages", "pages:", "pages:abc", "pages:1:title", "pa ges:1", "pages;1"])
def test_record_ref_rejects_invalid_element(element: str) -> None:
    with pytest.raises(InvalidElementReferenceError):
        RecordRef.parse(element)


def test_scope_parse_all_record_and_field() -> None:
    assert Scope.parse("all").kind is ScopeKind.ALL
    assert Scope.parse("ALL").kind is ScopeKind.ALL

    record_scope = Scope.parse("pages:7")
    assert record_scope.kind is ScopeKind.RECORD
    assert record_scope.record == RecordRef("pages", 7)

    field_scope = Scope.parse("content_elements:3:header")
    assert field_scope.kind is ScopeKind.FIELD
    assert field_scope.record == RecordRef("content_elements", 3)
    assert field_scope.field_name == "header"
    assert str(field_scope) == "content_elements:3:header"


@pytest.mark.parametrize("value", ["", "pages", "pages:x", "pages:1:", "pages:1:title:extra", "all:1:x:y"])
def test_scope_parse_rejects_invalid_values(value: str) -> None:
    with pytest.raises(InvalidElementReferenceError):
        Scope.parse(value)


def test_field_scope_requires_record() -> None:
    with pytest.raises(ValueError):
        Scope(field_name="title")


def test_rollback_plan_to_dict() -> None:
    record = RecordRef("pages", 1)
    plan = RollbackPlan(
        structural_ops=(StructuralOperation(RecordRef("pages", 2), StructuralOp.UNDELETE),),
        field_ops=(FieldOperation(record, {"title": "Home"}),),
    )

    assert not plan.is_empty
    assert RollbackPlan().is_empty
    assert plan.to_dict() == {
        "structural_ops": [{"record": "pages:2", "op": "undelete"}],
        "field_ops": [{"record": "pages:1", "fields": {"title": "Home"}}],
    }
