import re

import pytest

from conftest import claims_for, complete_fields
from confflow.core.errors import ConflictingWrite, Forbidden, InvalidTransition, NotFound, ValidationFailed
from confflow.models.decision import DecisionResult
from confflow.models.manuscript import FileKind, ManuscriptStatus
from confflow.models.reviews import Recommendation
from confflow.models.schemas import AuthorInput, ManuscriptFields
from confflow.services.manuscript_service import ManuscriptService
from confflow.services.track_service import StaticTrackLookup


def test_create_draft_defaults_creator_as_corresponding_author(manuscripts, author, dispatcher):
    draft = manuscripts.create_draft(claims_for(author), ManuscriptFields(title="  Draft title  "))
    assert draft.status == ManuscriptStatus.DRAFT
    assert draft.title == "Draft title"
    assert draft.version == 1
    assert len(draft.authors) == 1
    assert draft.authors[0].is_corresponding is True
    assert draft.authors[0].user_id == author.id
    assert dispatcher.types() == ["manuscript.draft_created"]


def test_drafts_are_never_matched_by_content(manuscripts, author):
    first = manuscripts.create_draft(claims_for(author), ManuscriptFields(title="Same"))
    second = manuscripts.create_draft(claims_for(author), ManuscriptFields(title="Same"))
    assert first.id != second.id
    assert len(manuscripts.list_manuscripts(claims_for(author))) == 2


def test_reviewer_only_user_cannot_create_drafts(manuscripts, reviewer1):
    with pytest.raises(Forbidden):
        manuscripts.create_draft(claims_for(reviewer1), ManuscriptFields(title="x"))


def test_unknown_track_is_rejected(repo, file_store, author):
    service = ManuscriptService(repo, file_store=file_store, track_lookup=StaticTrackLookup({"ai": "AI"}))
    with pytest.raises(ValidationFailed) as exc:
        service.create_draft(claims_for(author), ManuscriptFields(title="x", track_id="bio"))
    assert exc.value.fields == ["track_id"]
    ok = service.create_draft(claims_for(author), ManuscriptFields(title="x", track_id="ai"))
    assert ok.track_id == "ai"


def test_submit_with_empty_title_names_title(make_draft, manuscripts, author, repo):
    draft = make_draft(author, title="")
    with pytest.raises(ValidationFailed) as exc:
        manuscripts.submit_manuscript(draft.id, claims_for(author))
    assert "title" in exc.value.fields
    assert repo.get_manuscript(draft.id).status == ManuscriptStatus.DRAFT


def test_submit_without_file_is_rejected(make_draft, manuscripts, author):
    draft = make_draft(author, with_file=False)
    with pytest.raises(ValidationFailed) as exc:
        manuscripts.submit_manuscript(draft.id, claims_for(author))
    assert exc.value.fields == ["files"]


def test_submit_assigns_serial_once_and_logs_transition(make_submitted, manuscripts, author, editor, dispatcher):
    ms = make_submitted(author)
    assert ms.status == ManuscriptStatus.SUBMITTED
    assert re.fullmatch(r"SUB\d{14}\d{3}", ms.serial_number or "")
    assert ms.submitted_at is not None
    assert "manuscript.submitted" in dispatcher.types()

    with pytest.raises(InvalidTransition) as exc:
        manuscripts.submit_manuscript(ms.id, claims_for(author))
    assert exc.value.current_status == "submitted"
    assert exc.value.event == "submit"

    log = manuscripts.list_transitions(ms.id, claims_for(editor))
    assert [(t.from_status, t.to_status) for t in log] == [
        (None, ManuscriptStatus.DRAFT),
        (ManuscriptStatus.DRAFT, ManuscriptStatus.SUBMITTED),
    ]


def test_only_owners_can_submit(make_draft, manuscripts, author, other_author):
    draft = make_draft(author)
    with pytest.raises(Forbidden):
        manuscripts.submit_manuscript(draft.id, claims_for(other_author))


def test_linked_coauthor_gains_ownership(make_draft, manuscripts, author, other_author):
    fields = complete_fields(
        author,
        authors=[
            AuthorInput(name="Alice", email=author.email, is_corresponding=True, user_id=author.id),
            AuthorInput(name="Bob", email=other_author.email, user_id=other_author.id),
        ],
    )
    draft = manuscripts.create_draft(claims_for(author), fields)
    assert draft.owner_ids == frozenset({author.id, other_author.id})
    updated = manuscripts.update_draft(draft.id, claims_for(other_author), ManuscriptFields(abstract="New"))
    assert updated.abstract == "New"



def test_author_link_must_match_registered_email(manuscripts, author, other_author):
    fields = complete_fields(
        author,
        authors=[
            AuthorInput(name="Alice", email=author.email, is_corresponding=True, user_id=author.id),
            AuthorInput(name="Someone", email="not-them@x.org", user_id=other_author.id),
        ],
    )
    with pytest.raises(ValidationFailed) as exc:
        manuscripts.create_draft(claims_for(author), fields)
    assert exc.value.fields == ["authors[1].user_id"]

    draft = manuscripts.create_draft(claims_for(author), complete_fields(author))
    with pytest.raises(ValidationFailed):
        manuscripts.update_draft(draft.id, claims_for(author), ManuscriptFields(authors=fields.authors))
    # 未被合法关联的用户拿不到所有权
    with pytest.raises(Forbidden):
        manuscripts.update_draft(draft.id, claims_for(other_author), ManuscriptFields(title="hijacked"))


def test_author_link_to_unknown_user_is_rejected(manuscripts, author):
    fields = complete_fields(
        author, authors=[AuthorInput(name="Ghost", email="ghost@uni.edu", user_id="no-such-user")]
    )
    with pytest.raises(ValidationFailed) as exc:
        manuscripts.create_draft(claims_for(author), fields)
    assert exc.value.fields == ["authors[0].user_id"]


def test_author_link_email_comparison_ignores_case(manuscripts, author, other_author):
    fields = complete_fields(
        author,
        authors=[AuthorInput(name="Bob", email=other_author.email.upper(), user_id=other_author.id)],
    )
    draft = manuscripts.create_draft(claims_for(author), fields)
    assert other_author.id in draft.owner_ids

def test_update_draft_checks_version_and_status(make_submitted, make_draft, manuscripts, author):
    draft = make_draft(author)
    updated = manuscripts.update_draft(draft.id, claims_for(author), ManuscriptFields(title="v2"), expected_version=draft.version)
    assert updated.version == draft.version + 1
    assert updated.abstract == draft.abstract

    with pytest.raises(ConflictingWrite):
        manuscripts.update_draft(draft.id, claims_for(author), ManuscriptFields(title="v3"), expected_version=draft.version)

    submitted = make_submitted(author)
    with pytest.raises(InvalidTransition):
        manuscripts.update_draft(submitted.id, claims_for(author), ManuscriptFields(title="late"))


def test_update_draft_by_non_owner_is_forbidden(make_draft, manuscripts, author, other_author):
    draft = make_draft(author)
    with pytest.raises(Forbidden):
        manuscripts.update_draft(draft.id, claims_for(other_author), ManuscriptFields(title="mine"))


def test_discard_draft_only_in_draft(make_draft, make_submitted, manuscripts, author, repo):
    draft = make_draft(author)
    manuscripts.discard_draft(draft.id, claims_for(author))
    assert repo.get_manuscript(draft.id) is None
    with pytest.raises(NotFound):
        manuscripts.get_manuscript_view(draft.id, claims_for(author))

    submitted = make_submitted(author)
    with pytest.raises(InvalidTransition):
        manuscripts.discard_draft(submitted.id, claims_for(author))


def test_discard_draft_removes_stored_files(make_draft, manuscripts, author, file_store):
    draft = make_draft(author)
    paths = [f.path for f in draft.files]
    assert paths and all(p in file_store.files for p in paths)

    manuscripts.discard_draft(draft.id, claims_for(author))
    assert not any(p in file_store.files for p in paths)


def test_discard_draft_survives_file_cleanup_failure(make_draft, manuscripts, repo, author, monkeypatch):
    draft = make_draft(author)

    def _broken(*, path):
        raise RuntimeError("storage down")

    monkeypatch.setattr(manuscripts.file_store, "delete_file", _broken)
    manuscripts.discard_draft(draft.id, claims_for(author))
    assert repo.get_manuscript(draft.id) is None


def test_attach_file_versions_per_kind(make_draft, manuscripts, author, file_store):
    draft = make_draft(author)
    again = manuscripts.attach_file(
        draft.id,
        claims_for(author),
        kind=FileKind.MANUSCRIPT_ANONYMOUS,
        filename="../../paper v2.pdf",
        content=b"%PDF second",
        content_type="application/pdf",
    )
    title_page = manuscripts.attach_file(
        draft.id,
        claims_for(author),
        kind=FileKind.TITLE_PAGE,
        filename="title.pdf",
        content=b"%PDF title",
        content_type="application/pdf",
    )
    versions = [(f.kind, f.version) for f in title_page.files]
    assert versions == [
        (FileKind.MANUSCRIPT_ANONYMOUS, 1),
        (FileKind.MANUSCRIPT_ANONYMOUS, 2),
        (FileKind.TITLE_PAGE, 1),
    ]
    assert ".." not in again.files[-1].path
    assert again.files[-1].path in file_store.files


def test_attach_file_rejects_bad_payload(make_draft, manuscripts, author):
    draft = make_draft(author, with_file=False)
    with pytest.raises(ValidationFailed) as exc:
        manuscripts.attach_file(
            draft.id,
            claims_for(author),
            kind=FileKind.MANUSCRIPT_ANONYMOUS,
            filename="x.exe",
            content=b"",
            content_type="application/octet-stream",
        )
    assert exc.value.fields == ["content", "content_type"]


def test_reviewer_may_only_fetch_anonymized_body(make_draft, manuscripts, assignments, author, editor, reviewer1):
    draft = make_draft(author)
    with_title = manuscripts.attach_file(
        draft.id,
        claims_for(author),
        kind=FileKind.TITLE_PAGE,
        filename="title.pdf",
        content=b"%PDF title",
        content_type="application/pdf",
    )
    manuscripts.submit_manuscript(draft.id, claims_for(author))
    assignments.assign(draft.id, claims_for(editor), [reviewer1.id])

    body = next(f for f in with_title.files if f.kind == FileKind.MANUSCRIPT_ANONYMOUS)
    title = next(f for f in with_title.files if f.kind == FileKind.TITLE_PAGE)

    signed = manuscripts.get_file_url(draft.id, body.id, claims_for(reviewer1))
    assert body.path in signed.url
    with pytest.raises(Forbidden):
        manuscripts.get_file_url(draft.id, title.id, claims_for(reviewer1))
    assert manuscripts.get_file_url(draft.id, title.id, claims_for(author)).url
    assert manuscripts.get_file_url(draft.id, title.id, claims_for(editor)).url
    with pytest.raises(NotFound):
        manuscripts.get_file_url(draft.id, "missing", claims_for(editor))


def test_view_by_unrelated_author_is_forbidden(make_submitted, manuscripts, author, other_author):
    ms = make_submitted(author)
    with pytest.raises(Forbidden):
        manuscripts.get_manuscript_view(ms.id, claims_for(other_author))


def test_unassigned_reviewer_cannot_view(make_submitted, manuscripts, author, reviewer1):
    ms = make_submitted(author)
    with pytest.raises(Forbidden):
        manuscripts.get_manuscript_view(ms.id, claims_for(reviewer1))


def test_confidential_comment_visible_only_to_editorial_roles(
    make_under_review, manuscripts, assignments, author, editor, reviewer1, reviewer2
):
    manuscript_id, rows = make_under_review(author, reviewer1, reviewer2)
    for reviewer, row in ((reviewer1, rows[0]), (reviewer2, rows[1])):
        assignments.update_assignment_status(row.id, claims_for(reviewer), "accept")
        assignments.submit_review(
            row.id,
            claims_for(reviewer),
            score=15,
            recommendation=Recommendation.MINOR_REVISION,
            comment_to_author=f"public from {reviewer.display_name}",
            comment_to_editor="confidential",
        )

    editor_view = manuscripts.get_manuscript_view(manuscript_id, claims_for(editor))
    assert len(editor_view.assignments) == 2
    assert {r.comment_to_editor for r in editor_view.reviews} == {"confidential"}
    assert {r.reviewer_id for r in editor_view.reviews} == {reviewer1.id, reviewer2.id}

    author_view = manuscripts.get_manuscript_view(manuscript_id, claims_for(author))
    assert author_view.assignments == []
    assert len(author_view.reviews) == 2
    assert all(r.comment_to_editor is None for r in author_view.reviews)
    assert all(r.reviewer_id is None for r in author_view.reviews)
    assert author_view.decisions == []

    reviewer_view = manuscripts.get_manuscript_view(manuscript_id, claims_for(reviewer1))
    assert [a.reviewer_id for a in reviewer_view.assignments] == [reviewer1.id]
    assert len(reviewer_view.reviews) == 1
    assert reviewer_view.reviews[0].comment_to_editor is None
    assert reviewer_view.decisions is None


def test_list_manuscripts_scopes_by_role(make_submitted, make_draft, manuscripts, assignments, author, other_author, editor, reviewer1):
    mine = make_submitted(author)
    theirs = make_draft(other_author)
    assignments.assign(mine.id, claims_for(editor), [reviewer1.id])

    assert {m.id for m in manuscripts.list_manuscripts(claims_for(author))} == {mine.id}
    assert {m.id for m in manuscripts.list_manuscripts(claims_for(reviewer1))} == {mine.id}
    assert {m.id for m in manuscripts.list_manuscripts(claims_for(editor))} == {mine.id, theirs.id}


def test_transition_log_requires_editorial_access(make_submitted, manuscripts, author):
    ms = make_submitted(author)
    with pytest.raises(Forbidden):
        manuscripts.list_transitions(ms.id, claims_for(author))


def test_resubmit_after_revision_keeps_serial(
    make_under_review, manuscripts, decisions, author, chief, reviewer1, dispatcher
):
    manuscript_id, _ = make_under_review(author, reviewer1)
    first_serial = manuscripts.get_manuscript_view(manuscript_id, claims_for(author)).manuscript.serial_number
    decisions.decide(manuscript_id, claims_for(chief), DecisionResult.REVISE, "tighten section 3")

    revised = manuscripts.update_draft(manuscript_id, claims_for(author), ManuscriptFields(abstract="Revised"))
    assert revised.status == ManuscriptStatus.REVISION_REQUIRED

    resubmitted = manuscripts.resubmit_manuscript(manuscript_id, claims_for(author))
    assert resubmitted.status == ManuscriptStatus.SUBMITTED
    assert resubmitted.serial_number == first_serial
    event = dispatcher.events[-1]
    assert event.type.value == "manuscript.resubmitted"
    assert reviewer1.id in event.recipients
