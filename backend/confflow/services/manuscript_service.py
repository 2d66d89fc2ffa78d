from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Optional

from confflow.core.errors import ConflictingWrite, Forbidden, InvalidTransition, NotFound, ValidationFailed
from confflow.core.role_matrix import (
    Action,
    Capability,
    ResourceScope,
    authorize,
    list_capabilities,
    require_action,
)
from confflow.models.manuscript import Author, FileKind, Manuscript, ManuscriptFile, ManuscriptStatus, StatusTransition
from confflow.models.notification import LifecycleEvent, LifecycleEventType
from confflow.models.reviews import AssignmentStatus, Review, ReviewAssignment
from confflow.models.schemas import ManuscriptFields
from confflow.repositories.base import ManuscriptRepository
from confflow.schemas.manuscript_view import ManuscriptView, ReviewView
from confflow.schemas.token import IdentityClaims
from confflow.services.lifecycle_service import LifecycleEngine, TransitionEvent
from confflow.services.notification_service import NotificationDispatcher, publish
from confflow.services.storage_service import FileStore, SignedUrl
from confflow.services.track_service import TrackLookup

logger = logging.getLogger("confflow.manuscripts")

MAX_FILE_SIZE = 50 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def manuscript_scope(manuscript: Manuscript, assignments: list[ReviewAssignment]) -> ResourceScope:
    return ResourceScope(
        author_ids=manuscript.owner_ids,
        reviewer_ids=frozenset(
            a.reviewer_id for a in assignments if a.status != AssignmentStatus.DECLINED
        ),
    )


def _safe_filename(name: str) -> str:
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).strip("._")
    return cleaned or "file"


class ManuscriptService:
    """
    稿件撰写/提交/查看服务。

    中文注释:
    - 草稿 id 在创建时分配，之后一律按 id 操作（不做内容匹配去重）。
    - 状态变化统一交给 LifecycleEngine；这里只负责内容编辑与视图过滤。
    """

    def __init__(
        self,
        repository: ManuscriptRepository,
        *,
        file_store: FileStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        track_lookup: Optional[TrackLookup] = None,
        engine: Optional[LifecycleEngine] = None,
    ) -> None:
        self.repository = repository
        self.file_store = file_store
        self.dispatcher = dispatcher
        self.track_lookup = track_lookup
        self.engine = engine or LifecycleEngine(repository)

    # === helpers ===

    def _load_with_scope(self, manuscript_id: str) -> tuple[Manuscript, list[ReviewAssignment], ResourceScope]:
        manuscript = self.engine.load(manuscript_id)
        assignments = self.repository.list_assignments(manuscript_id)
        return manuscript, assignments, manuscript_scope(manuscript, assignments)

    def _check_track(self, track_id: Optional[str]) -> None:
        if not track_id or self.track_lookup is None:
            return
        if self.track_lookup.get_track(track_id) is None:
            raise ValidationFailed(["track_id"], f"Unknown track: {track_id}")

    def _check_author_links(self, authors: list[Author]) -> None:
        """
        作者的 user_id 会授予稿件所有权，必须指向邮箱一致的已注册用户。
        """
        bad: list[str] = []
        for i, author in enumerate(authors):
            if not author.user_id:
                continue
            user = self.repository.get_user(author.user_id)
            if user is None or user.email.strip().lower() != (author.email or "").strip().lower():
                bad.append(f"authors[{i}].user_id")
        if bad:
            raise ValidationFailed(bad, "Author user_id must belong to a user with the same email")

    def _content_changes(self, fields: ManuscriptFields) -> dict[str, Any]:
        data = fields.model_dump(exclude_unset=True, exclude={"version"})
        changes: dict[str, Any] = {}
        for key, value in data.items():
            if key == "authors":
                changes["authors"] = [Author.model_validate(a) for a in (value or [])]
            elif key in {"title", "abstract"}:
                changes[key] = value or ""
            elif key == "keywords":
                changes[key] = value or []
            else:
                changes[key] = value
        return changes

    def _ensure_editable(self, manuscript: Manuscript, event: str) -> None:
        if manuscript.status not in ManuscriptStatus.editable():
            raise InvalidTransition(manuscript.status.value, event)

    def _notify(
        self,
        event_type: LifecycleEventType,
        manuscript: Manuscript,
        identity: IdentityClaims,
        recipients: Optional[list[str]] = None,
        **payload: Any,
    ) -> None:
        publish(
            self.dispatcher,
            LifecycleEvent(
                type=event_type,
                manuscript_id=manuscript.id,
                actor_id=identity.id,
                recipients=recipients if recipients is not None else sorted(manuscript.owner_ids),
                payload={"status": manuscript.status.value, "title": manuscript.title, **payload},
            ),
        )

    # === authoring ===

    def create_draft(self, identity: IdentityClaims, fields: ManuscriptFields) -> Manuscript:
        require_action(identity, Action.CREATE_DRAFT)
        changes = self._content_changes(fields)
        self._check_track(changes.get("track_id"))
        self._check_author_links(changes.get("authors") or [])

        if not changes.get("authors"):
            # 未填写作者时，默认把创建者作为通讯作者
            changes["authors"] = [
                Author(
                    name=identity.display_name,
                    email=identity.email,
                    is_corresponding=True,
                    user_id=identity.id,
                )
            ]

        now = self.engine.now()
        draft = Manuscript(
            id=str(uuid.uuid4()),
            created_by=identity.id,
            created_at=now,
            updated_at=now,
            **changes,
        )
        created = self.engine.record_draft_created(draft, actor_id=identity.id)
        logger.info("[Manuscript] draft %s created by %s", created.id, identity.id)
        self._notify(LifecycleEventType.DRAFT_CREATED, created, identity, recipients=[identity.id])
        return created

    def update_draft(
        self,
        manuscript_id: str,
        identity: IdentityClaims,
        fields: ManuscriptFields,
        *,
        expected_version: Optional[int] = None,
    ) -> Manuscript:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.EDIT_MANUSCRIPT, scope)
        self._ensure_editable(manuscript, "edit_manuscript")
        if expected_version is not None and expected_version != manuscript.version:
            raise ConflictingWrite(
                f"Manuscript has been modified (version {manuscript.version}, expected {expected_version})"
            )

        changes = self._content_changes(fields)
        if "track_id" in changes:
            self._check_track(changes["track_id"])
        if "authors" in changes:
            self._check_author_links(changes["authors"])
        if not changes:
            return manuscript

        return self.repository.update_content(
            manuscript_id,
            expected_version=manuscript.version,
            changes=changes,
            updated_at=self.engine.now(),
        )

    def discard_draft(self, manuscript_id: str, identity: IdentityClaims) -> None:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.EDIT_MANUSCRIPT, scope)
        if manuscript.status != ManuscriptStatus.DRAFT:
            raise InvalidTransition(manuscript.status.value, "discard_draft")
        self.repository.delete_draft(manuscript_id, expected_version=manuscript.version)
        # 数据库删除成功后再清理文件；清理失败只记日志
        for stored in manuscript.files:
            try:
                self.file_store.delete_file(path=stored.path)
            except Exception as e:
                logger.warning("[Manuscript] file cleanup failed (ignored): %s: %s", stored.path, e)
        logger.info("[Manuscript] draft %s discarded by %s", manuscript_id, identity.id)

    def attach_file(
        self,
        manuscript_id: str,
        identity: IdentityClaims,
        *,
        kind: FileKind,
        filename: str,
        content: bytes,
        content_type: str,
    ) -> Manuscript:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.EDIT_MANUSCRIPT, scope)
        self._ensure_editable(manuscript, "attach_file")

        bad: list[str] = []
        if not (filename or "").strip():
            bad.append("filename")
        if not content or len(content) > MAX_FILE_SIZE:
            bad.append("content")
        if content_type not in ALLOWED_CONTENT_TYPES:
            bad.append("content_type")
        if bad:
            raise ValidationFailed(bad)

        version = 1 + max((f.version for f in manuscript.files if f.kind == kind), default=0)
        file_id = str(uuid.uuid4())
        path = f"{manuscript.id}/{kind.value}/v{version}_{file_id}_{_safe_filename(filename)}"
        self.file_store.put_file(path=path, content=content, content_type=content_type)

        record = ManuscriptFile(
            id=file_id,
            kind=kind,
            path=path,
            original_name=filename.strip(),
            size=len(content),
            content_type=content_type,
            version=version,
            created_at=self.engine.now(),
        )
        return self.repository.update_content(
            manuscript_id,
            expected_version=manuscript.version,
            changes={"files": [*manuscript.files, record]},
            updated_at=record.created_at,
        )

    def get_file_url(self, manuscript_id: str, file_id: str, identity: IdentityClaims) -> SignedUrl:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.VIEW_MANUSCRIPT, scope)

        record = next((f for f in manuscript.files if f.id == file_id), None)
        if record is None:
            raise NotFound("File not found")

        caps = list_capabilities(identity.roles)
        is_owner = identity.id in scope.author_ids
        if (
            Capability.VIEW_ALL_SUBMISSIONS not in caps
            and not is_owner
            and record.kind != FileKind.MANUSCRIPT_ANONYMOUS
        ):
            # 审稿人只能取匿名稿件正文
            raise Forbidden("Reviewers may only access the anonymized manuscript")

        try:
            return self.file_store.get_file_url(path=record.path)
        except KeyError as e:
            raise NotFound("File content missing") from e

    # === lifecycle ===

    def submit_manuscript(self, manuscript_id: str, identity: IdentityClaims) -> Manuscript:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.SUBMIT_MANUSCRIPT, scope)
        result = self.engine.apply(manuscript, TransitionEvent.SUBMIT, actor_id=identity.id)
        submitted = result.manuscript
        self._notify(
            LifecycleEventType.MANUSCRIPT_SUBMITTED,
            submitted,
            identity,
            serial_number=submitted.serial_number,
        )
        return submitted

    def resubmit_manuscript(self, manuscript_id: str, identity: IdentityClaims) -> Manuscript:
        manuscript, assignments, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.RESUBMIT_MANUSCRIPT, scope)
        result = self.engine.apply(manuscript, TransitionEvent.RESUBMIT, actor_id=identity.id)
        resubmitted = result.manuscript
        reviewers = sorted(scope.reviewer_ids)
        self._notify(
            LifecycleEventType.MANUSCRIPT_RESUBMITTED,
            resubmitted,
            identity,
            recipients=sorted(resubmitted.owner_ids) + reviewers,
            serial_number=resubmitted.serial_number,
        )
        return resubmitted

    # === views ===

    def list_manuscripts(self, identity: IdentityClaims) -> list[Manuscript]:
        caps = list_capabilities(identity.roles)
        if Capability.VIEW_ALL_SUBMISSIONS in caps:
            return self.repository.list_manuscripts()
        return self.repository.list_manuscripts_for_user(identity.id)

    def get_manuscript_view(self, manuscript_id: str, identity: IdentityClaims) -> ManuscriptView:
        manuscript, assignments, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.VIEW_MANUSCRIPT, scope)

        caps = list_capabilities(identity.roles)
        sees_all = Capability.VIEW_ALL_REVIEWS in caps
        is_owner = identity.id in scope.author_ids
        reviews = self.repository.list_reviews(manuscript_id)

        if sees_all:
            visible_assignments = assignments
            visible_reviews = [self._review_view(r, anonymize=False, confidential=True) for r in reviews]
        elif identity.id in scope.reviewer_ids:
            visible_assignments = [a for a in assignments if a.reviewer_id == identity.id]
            visible_reviews = [
                self._review_view(r, anonymize=False, confidential=False)
                for r in reviews
                if r.reviewer_id == identity.id
            ]
        elif is_owner:
            visible_assignments = []
            visible_reviews = [self._review_view(r, anonymize=True, confidential=False) for r in reviews]
        else:
            visible_assignments = []
            visible_reviews = []

        view = ManuscriptView(
            manuscript=manuscript,
            assignments=visible_assignments,
            reviews=visible_reviews,
            capabilities=sorted(caps, key=lambda c: c.value),
        )
        if authorize(user_id=identity.id, roles=identity.roles, action=Action.VIEW_DECISIONS, resource=scope):
            decisions = self.repository.list_decisions(manuscript_id)
            view.decisions = decisions
            view.current_decision = decisions[0] if decisions else None
        return view

    @staticmethod
    def _review_view(review: Review, *, anonymize: bool, confidential: bool) -> ReviewView:
        return ReviewView(
            id=review.id,
            assignment_id=review.assignment_id,
            reviewer_id=None if anonymize else review.reviewer_id,
            score=review.score,
            recommendation=review.recommendation,
            comment_to_author=review.comment_to_author,
            comment_to_editor=review.comment_to_editor if confidential else None,
            submitted_at=review.submitted_at,
        )

    def list_transitions(self, manuscript_id: str, identity: IdentityClaims) -> list[StatusTransition]:
        manuscript, _, scope = self._load_with_scope(manuscript_id)
        require_action(identity, Action.VIEW_TRANSITIONS, scope)
        return self.repository.list_transitions(manuscript.id)
