from typing import Optional

import pytest
from fastapi.testclient import TestClient

from api.main import app
from services import record_history as history_service
from services.history_types import (
    RecordRef,
    SnapshotEvent,
    StructuralEvent,
    StructuralKind,
)
from services.record_history import HistoryViewState, RecordHistory
from services.rollback_executor import RollbackExecutor

PAGE = RecordRef("pages", 1)
HEADER = RecordRef("content_elements", 10)
NEW_ELEMENT = RecordRef("content_elements", 11)


class _FakeHistoryStore:
    def __init__(self) -> None:
        self.snapshots = [
            SnapshotEvent(2, PAGE, {"title": "Home"}, {"title": "Start"}, history_id=20),
            SnapshotEvent(4, HEADER, {"header": "Hello"}, {"header": "Hi"}, history_id=40, is_snapshot_mark=True),
            SnapshotEvent(5, HEADER, {"header": "Hi"}, {"header": "Hey"}, history_id=50),
        ]
        self.structural = [StructuralEvent(3, NEW_ELEMENT, StructuralKind.INSERT)]

    def is_known_table(self, table: str) -> bool:
        return table in ("pages", "content_elements")

    async def fetch_snapshots(self, record, max_steps, since_sequence):
        return [event for event in reversed(self.snapshots) if event.record == record]

    async def fetch_structural(self, record, max_steps, since_sequence):
        return [event for event in self.structural if event.record == record]

    async def list_descendants(self, root):
        return [HEADER, NEW_ELEMENT] if root == PAGE else []

    async def resolve_history_entry(self, history_id: int) -> Optional[tuple[RecordRef, int]]:
        for event in self.snapshots:
            if event.history_id == history_id:
                return event.record, event.sequence - 1
        return None

    async def latest_snapshot_sequence(self, record: RecordRef) -> Optional[int]:
        sequences = [event.sequence for event in self.snapshots if event.record == record]
        return max(sequences) if sequences else None


class _RecordingExecutor(RollbackExecutor):
    def __init__(self, user_id: Optional[str], calls: list) -> None:
        self.user_id = user_id
        self.calls = calls

    async def delete_record(self, record: RecordRef) -> None:
        self.calls.append(("delete", str(record), self.user_id))

    async def undelete_record(self, record: RecordRef) -> None:
        self.calls.append(("undelete", str(record), self.user_id))

    async def restore_fields(self, record: RecordRef, fields: dict) -> None:
        self.calls.append(("restore", str(record), dict(fields)))


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, calls: list) -> TestClient:
    service = RecordHistory(
        event_source=_FakeHistoryStore(),
        executor_factory=lambda user_id: _RecordingExecutor(user_id, calls),
        is_restorable=None,
    )

    async def _toggle(history_id: int) -> Optional[bool]:
        return True if history_id == 40 else None

    monkeypatch.setattr(service, "toggle_snapshot_mark", _toggle)
    monkeypatch.setattr(history_service, "record_history", service)
    return TestClient(app)


def test_history_lists_page_with_sub_elements(client: TestClient) -> None:
    response = client.get("/api/history/pages:1")

    assert response.status_code == 200
    data = response.json()
    assert [entry["sequence"] for entry in data["entries"]] == [5, 4, 3, 2]
    assert data["entries"][2]["action"] == "insert"
    assert data["entries"][0]["diff"] == {"header": {"old": "Hi", "new": "Hey"}}


def test_history_view_options(client: TestClient) -> None:
    response = client.get(
        "/api/history/pages:1",
        params={"show_sub_elements": "false", "show_diff": "false"},
    )
    assert [entry["sequence"] for entry in response.json()["entries"]] == [2]
    assert "diff" not in response.json()["entries"][0]

    response = client.get("/api/history/pages:1", params={"max_steps": "marked"})
    assert [entry["history_id"] for entry in response.json()["entries"]] == [40]

    response = client.get("/api/history/pages:1", params={"since_sequence": 3})
    assert [entry["sequence"] for entry in response.json()["entries"]] == [5, 4]


def test_invalid_element_is_rejected(client: TestClient) -> None:
    assert client.get("/api/history/pages").status_code == 400
    assert client.get("/api/history/pages:1", params={"max_steps": "lots"}).status_code == 400


def test_unknown_table_is_not_found(client: TestClient) -> None:
    response = client.get("/api/history/be_users:1")

    assert response.status_code == 404
    assert response.json()["detail"] == "Unknown table: be_users"


def test_diff_preview_with_plan(client: TestClient) -> None:
    response = client.get(
        "/api/history/pages:1/diff",
        params={"since_sequence": 3, "scope": "content_elements:10:header"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["records"] == [
        {
            "record": "content_elements:10",
            "action": None,
            "fields": {"header": {"current": "Hey", "restore": "Hello"}},
        }
    ]
    assert data["plan"] == {
        "structural_ops": [],
        "field_ops": [{"record": "content_elements:10", "fields": {"header": "Hello"}}],
    }


def test_diff_preview_rejects_invalid_scope(client: TestClient) -> None:
    response = client.get("/api/history/pages:1/diff", params={"scope": "pages:1:title:x"})

    assert response.status_code == 400


def test_rollback_all(client: TestClient, calls: list) -> None:
    response = client.post(
        "/api/history/pages:1/rollback",
        params={"user_id": "admin"},
        json={"scope": "all", "max_steps": "all"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["scope"] == "all"
    assert calls == [
        ("delete", "content_elements:11", "admin"),
        ("restore", "content_elements:10", {"header": "Hello"}),
        ("restore", "pages:1", {"title": "Home"}),
    ]


def test_rollback_with_empty_plan(client: TestClient, calls: list) -> None:
    response = client.post(
        "/api/history/pages:1/rollback",
        json={"scope": "content_elements:11:header"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "nothing_to_rollback"
    assert calls == []


def test_revert_latest_field(client: TestClient, calls: list) -> None:
    response = client.post("/api/history/content_elements:10/revert", json={"field": "header"})

    assert response.status_code == 200
    assert response.json()["scope"] == "content_elements:10:header"
    assert calls == [("restore", "content_elements:10", {"header": "Hi"})]


def test_revert_latest_invalid_element(client: TestClient) -> None:
    assert client.post("/api/history/pages/revert", json={}).status_code == 400


def test_history_entry_diff(client: TestClient) -> None:
    response = client.get("/api/history/entries/40")

    assert response.status_code == 200
    data = response.json()
    assert data["element"] == "content_elements:10"
    assert data["since_sequence"] == 3
    assert data["records"][0]["fields"] == {"header": {"current": "Hey", "restore": "Hello"}}

    assert client.get("/api/history/entries/999").status_code == 404


def test_snapshot_mark_toggle(client: TestClient) -> None:
    response = client.post("/api/history/entries/40/snapshot")
    assert response.status_code == 200
    assert response.json() == {"history_id": 40, "snapshot": True}

    assert client.post("/api/history/entries/41/snapshot").status_code == 404


def test_view_state_defaults_and_limits() -> None:
    state = HistoryViewState(element="pages:1")
    assert state.max_steps is None
    assert state.step_limit is None
    assert state.show_diff and state.show_sub_elements and state.show_insert_delete

    assert HistoryViewState(element="pages:1", max_steps=0).step_limit is None
    marked = HistoryViewState(element="pages:1", max_steps="marked")
    assert marked.show_marked
    assert marked.step_limit is None

    with pytest.raises(ValueError):
        HistoryViewState(element="pages")


def test_rollback_since_sequence_ignores_step_limit(client: TestClient, calls: list) -> None:
    response = client.post(
        "/api/history/pages:1/rollback",
        json={"scope": "content_elements:10", "since_sequence": 3, "max_steps": 1},
    )

    assert response.status_code == 200
    assert calls == [("restore", "content_elements:10", {"header": "Hello"})]
