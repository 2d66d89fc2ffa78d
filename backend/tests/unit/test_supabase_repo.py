from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from confflow.core.errors import AlreadyExists, AlreadySubmitted, ConflictingWrite, NotFound
from confflow.models.decision import Decision, DecisionResult
from confflow.models.manuscript import Author, Manuscript, ManuscriptStatus, StatusTransition
from confflow.models.reviews import Recommendation, Review
from confflow.models.user import User
from confflow.repositories.base import TransitionWrite
from confflow.repositories.supabase_repo import SupabaseRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Resp:
    def __init__(self, *, data=None):
        self.data = data


def _chain():
    q = MagicMock()
    for method in (
        "select",
        "eq",
        "ilike",
        "update",
        "insert",
        "delete",
        "contains",
        "in_",
        "limit",
        "order",
        "neq",
    ):
        getattr(q, method).return_value = q
    q.execute.return_value = _Resp(data=[])
    return q


@pytest.fixture
def client():
    c = MagicMock()
    tables: dict[str, MagicMock] = {}

    def _table(name: str):
        tables.setdefault(name, _chain())
        return tables[name]

    c.table.side_effect = _table
    c._tables = tables  # type: ignore[attr-defined]
    c.rpc.return_value = _chain()
    return c


def _manuscript_row(**overrides):
    row = {
        "id": "m1",
        "title": "T",
        "abstract": "A",
        "authors": [],
        "files": [],
        "status": "under_review",
        "created_by": "u1",
        "owner_ids": ["u1"],
        "version": 4,
        "created_at": NOW.isoformat(),
        "updated_at": NOW.isoformat(),
    }
    row.update(overrides)
    return row


def _write(**overrides) -> TransitionWrite:
    data = dict(
        manuscript_id="m1",
        expected_version=3,
        expected_status=ManuscriptStatus.UNDER_REVIEW,
        new_status=ManuscriptStatus.ACCEPTED,
        updated_at=NOW,
    )
    data.update(overrides)
    return TransitionWrite(**data)


def test_apply_transition_sends_rpc_and_parses_result(client):
    decision = Decision(
        id="d1", manuscript_id="m1", result=DecisionResult.ACCEPT, decided_by="chief", created_at=NOW
    )
    client.rpc.return_value.execute.return_value = _Resp(
        data={
            "manuscript": _manuscript_row(status="accepted"),
            "decision": {**decision.model_dump(mode="json"), "sequence": 2},
        }
    )

    result = SupabaseRepository(client).apply_transition(_write(decision=decision))

    name, params = client.rpc.call_args.args
    assert name == "confflow_apply_transition"
    assert params["p_expected_version"] == 3
    assert params["p_expected_status"] == "under_review"
    assert params["p_new_status"] == "accepted"
    assert params["p_decision"]["id"] == "d1"
    assert params["p_assignments"] == []
    assert result.manuscript.status == ManuscriptStatus.ACCEPTED
    assert result.decision is not None and result.decision.sequence == 2


@pytest.mark.parametrize(
    "code, expected",
    [("40001", ConflictingWrite), ("23505", ConflictingWrite), ("P0002", NotFound)],
)
def test_apply_transition_maps_database_errors(client, code, expected):
    client.rpc.return_value.execute.side_effect = APIError({"code": code, "message": "boom"})
    with pytest.raises(expected):
        SupabaseRepository(client).apply_transition(_write())


def test_apply_transition_propagates_unknown_errors(client):
    client.rpc.return_value.execute.side_effect = APIError({"code": "XX000", "message": "internal"})
    with pytest.raises(APIError):
        SupabaseRepository(client).apply_transition(_write())



def test_insert_manuscript_writes_row_and_log_in_one_call(client):
    draft = Manuscript(
        id="m1",
        title="T",
        authors=[Author(name="B", email="b@x.org", user_id="u2")],
        created_by="u1",
        created_at=NOW,
        updated_at=NOW,
    )
    log = StatusTransition(
        manuscript_id="m1", to_status=ManuscriptStatus.DRAFT, event="create_draft", changed_by="u1", created_at=NOW
    )
    client.rpc.return_value.execute.return_value = _Resp(data=_manuscript_row(status="draft", version=1))

    created = SupabaseRepository(client).insert_manuscript(draft, log)

    client.rpc.assert_called_once()
    name, params = client.rpc.call_args.args
    assert name == "confflow_create_draft"
    assert params["p_manuscript"]["owner_ids"] == ["u1", "u2"]
    assert params["p_log"]["event"] == "create_draft"
    assert params["p_log"]["to_status"] == "draft"
    # 不再分两次直接写表
    client.table.assert_not_called()
    assert created.status == ManuscriptStatus.DRAFT


def test_insert_manuscript_failure_propagates(client):
    client.rpc.return_value.execute.side_effect = APIError({"code": "23503", "message": "fk violation"})
    draft = Manuscript(id="m1", created_by="u1", created_at=NOW, updated_at=NOW)
    log = StatusTransition(
        manuscript_id="m1", to_status=ManuscriptStatus.DRAFT, event="create_draft", changed_by="u1", created_at=NOW
    )
    with pytest.raises(APIError):
        SupabaseRepository(client).insert_manuscript(draft, log)
    client.table.assert_not_called()

def test_update_content_uses_version_compare_and_set(client):
    manuscripts = client.table("manuscripts")
    manuscripts.execute.return_value = _Resp(data=[_manuscript_row(title="New", version=5)])

    updated = SupabaseRepository(client).update_content(
        "m1", expected_version=4, changes={"title": "New"}, updated_at=NOW
    )
    payload = manuscripts.update.call_args.args[0]
    assert payload["title"] == "New"
    assert payload["version"] == 5
    manuscripts.eq.assert_any_call("version", 4)
    assert updated.version == 5


def test_update_content_stale_version_is_conflict(client):
    manuscripts = client.table("manuscripts")
    # 第一次：条件更新未命中；第二次：稿件仍存在
    manuscripts.execute.side_effect = [_Resp(data=[]), _Resp(data=[_manuscript_row()])]
    with pytest.raises(ConflictingWrite):
        SupabaseRepository(client).update_content(
            "m1", expected_version=1, changes={"title": "New"}, updated_at=NOW
        )


def test_update_content_missing_manuscript_is_not_found(client):
    client.table("manuscripts").execute.side_effect = [_Resp(data=[]), _Resp(data=[])]
    with pytest.raises(NotFound):
        SupabaseRepository(client).update_content(
            "m1", expected_version=1, changes={"title": "New"}, updated_at=NOW
        )


def test_update_content_rejects_non_content_fields(client):
    with pytest.raises(ValueError):
        SupabaseRepository(client).update_content(
            "m1", expected_version=1, changes={"status": "accepted"}, updated_at=NOW
        )
    client.table.assert_not_called()


def test_insert_review_duplicate_is_already_submitted(client):
    client.table("reviews").execute.side_effect = APIError({"code": "23505", "message": "duplicate key"})
    review = Review(
        id="rv1",
        assignment_id="a1",
        manuscript_id="m1",
        reviewer_id="r1",
        score=12,
        recommendation=Recommendation.ACCEPT,
        submitted_at=NOW,
    )
    with pytest.raises(AlreadySubmitted):
        SupabaseRepository(client).insert_review(review)


def test_add_user_stores_password_hash(client):
    users = client.table("users")
    user = User(
        id="u1", email="a@b.com", display_name="A", password_hash="$2b$12$hash", created_at=NOW, updated_at=NOW
    )
    SupabaseRepository(client).add_user(user)
    row = users.insert.call_args.args[0]
    assert row["password_hash"] == "$2b$12$hash"
    assert row["email"] == "a@b.com"


def test_add_user_duplicate_email_is_already_exists(client):
    client.table("users").execute.side_effect = APIError({"code": "23505", "message": "duplicate key"})
    user = User(id="u1", email="a@b.com", display_name="A", created_at=NOW, updated_at=NOW)
    with pytest.raises(AlreadyExists):
        SupabaseRepository(client).add_user(user)


def test_get_manuscript_invalid_id_returns_none(client):
    client.table("manuscripts").execute.side_effect = APIError({"code": "22P02", "message": "invalid uuid"})
    assert SupabaseRepository(client).get_manuscript("not-a-uuid") is None


def test_list_decisions_newest_first(client):
    rows = [
        {"id": "d1", "manuscript_id": "m1", "result": "revise", "decided_by": "c", "created_at": NOW.isoformat(), "sequence": 1},
        {"id": "d2", "manuscript_id": "m1", "result": "accept", "decided_by": "c", "created_at": NOW.isoformat(), "sequence": 2},
    ]
    client.table("decisions").execute.return_value = _Resp(data=rows)
    out = SupabaseRepository(client).list_decisions("m1")
    assert [d.id for d in out] == ["d2", "d1"]
