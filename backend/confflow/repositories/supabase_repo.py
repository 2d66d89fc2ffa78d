from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from postgrest.exceptions import APIError

from confflow.core.errors import AlreadyExists, AlreadySubmitted, ConflictingWrite, NotFound
from confflow.models.decision import Decision
from confflow.models.manuscript import Manuscript, ManuscriptStatus, StatusTransition
from confflow.models.reviews import AssignmentStatus, Review, ReviewAssignment
from confflow.models.user import User
from confflow.repositories.base import (
    ManuscriptRepository,
    TransitionResult,
    TransitionWrite,
    check_content_updates,
    sort_decisions_newest_first,
)

logger = logging.getLogger("confflow.repository")

# Postgres SQLSTATE
_UNIQUE_VIOLATION = "23505"
_SERIALIZATION_FAILURE = "40001"
_NO_DATA_FOUND = "P0002"


def _rows(resp: Any) -> list[dict[str, Any]]:
    return getattr(resp, "data", None) or []


def _error_code(exc: APIError) -> str:
    return str(getattr(exc, "code", "") or "")


def _manuscript_row(manuscript: Manuscript) -> dict[str, Any]:
    row = manuscript.model_dump(mode="json")
    row["owner_ids"] = sorted(manuscript.owner_ids)
    return row


class SupabaseRepository(ManuscriptRepository):
    """
    Supabase (PostgREST) 仓储实现。

    中文注释:
    - 使用 service_role（supabase_admin）读写；授权已在服务层完成。
    - 状态迁移通过 RPC confflow_apply_transition 在数据库事务内完成（见 core/schema.sql）。
    - 其余条件写入用 `.eq("version", ...)` / `.eq("status", ...)` 做 compare-and-set。
    """

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from confflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    # === Users ===

    def add_user(self, user: User) -> User:
        row = user.model_dump(mode="json")
        # password_hash 在序列化时被排除，这里显式写入
        row["password_hash"] = user.password_hash
        try:
            resp = self.client.table("users").insert(row).execute()
        except APIError as e:
            if _error_code(e) == _UNIQUE_VIOLATION:
                raise AlreadyExists(f"Email already registered: {user.email}") from e
            raise
        rows = _rows(resp)
        return User.model_validate(rows[0]) if rows else user

    def get_user(self, user_id: str) -> Optional[User]:
        resp = self.client.table("users").select("*").eq("id", user_id).limit(1).execute()
        rows = _rows(resp)
        return User.model_validate(rows[0]) if rows else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        # ilike 不带通配符即为大小写不敏感的相等比较
        needle = (email or "").strip().replace("%", r"\%").replace("_", r"\_")
        resp = self.client.table("users").select("*").ilike("email", needle).limit(1).execute()
        rows = _rows(resp)
        return User.model_validate(rows[0]) if rows else None

    def update_user(self, user: User) -> User:
        payload = user.model_dump(mode="json", include={"display_name", "roles", "is_active", "updated_at"})
        resp = self.client.table("users").update(payload).eq("id", user.id).execute()
        rows = _rows(resp)
        if not rows:
            raise NotFound("User not found")
        return User.model_validate(rows[0])

    # === Manuscripts ===

    def insert_manuscript(self, manuscript: Manuscript, log: StatusTransition) -> Manuscript:
        # 稿件行与审计日志由 SQL 函数在同一事务内写入
        resp = self.client.rpc(
            "confflow_create_draft",
            {"p_manuscript": _manuscript_row(manuscript), "p_log": log.model_dump(mode="json")},
        ).execute()
        data = getattr(resp, "data", None)
        if isinstance(data, list):
            data = data[0] if data else None
        return Manuscript.model_validate(data) if data else manuscript

    def get_manuscript(self, manuscript_id: str) -> Optional[Manuscript]:
        try:
            resp = self.client.table("manuscripts").select("*").eq("id", manuscript_id).limit(1).execute()
        except APIError as e:
            # 非法 uuid（22P02）等同于不存在
            logger.info("manuscript lookup failed for %s: %s", manuscript_id, e)
            return None
        rows = _rows(resp)
        return Manuscript.model_validate(rows[0]) if rows else None

    def list_manuscripts(self) -> list[Manuscript]:
        resp = self.client.table("manuscripts").select("*").order("created_at", desc=True).execute()
        return [Manuscript.model_validate(r) for r in _rows(resp)]

    def list_manuscripts_for_user(self, user_id: str) -> list[Manuscript]:
        owned = _rows(
            self.client.table("manuscripts").select("*").contains("owner_ids", [user_id]).execute()
        )
        assigned_ids = {
            str(r.get("manuscript_id"))
            for r in _rows(
                self.client.table("review_assignments")
                .select("manuscript_id")
                .eq("reviewer_id", user_id)
                .neq("status", AssignmentStatus.DECLINED.value)
                .execute()
            )
        }
        seen = {str(r.get("id")) for r in owned}
        missing = sorted(assigned_ids - seen)
        extra: list[dict[str, Any]] = []
        if missing:
            extra = _rows(self.client.table("manuscripts").select("*").in_("id", missing).execute())
        items = [Manuscript.model_validate(r) for r in owned + extra]
        return sorted(items, key=lambda m: m.created_at, reverse=True)

    def _raise_missing_or_conflict(self, manuscript_id: str) -> None:
        if self.get_manuscript(manuscript_id) is None:
            raise NotFound("Manuscript not found")
        raise ConflictingWrite(f"Manuscript {manuscript_id} was modified concurrently")

    def update_content(
        self,
        manuscript_id: str,
        *,
        expected_version: int,
        changes: dict[str, Any],
        updated_at: datetime,
    ) -> Manuscript:
        check_content_updates(changes)
        candidate = Manuscript.model_validate(
            {"id": manuscript_id, "created_by": "", "created_at": updated_at, "updated_at": updated_at, **changes}
        )
        payload = candidate.model_dump(mode="json", include=set(changes))
        if "authors" in changes:
            existing = self.get_manuscript(manuscript_id)
            if existing is None:
                raise NotFound("Manuscript not found")
            payload["owner_ids"] = sorted(
                {existing.created_by} | {a.user_id for a in candidate.authors if a.user_id}
            )
        payload["version"] = expected_version + 1
        payload["updated_at"] = updated_at.isoformat()

        resp = (
            self.client.table("manuscripts")
            .update(payload)
            .eq("id", manuscript_id)
            .eq("version", expected_version)
            .execute()
        )
        rows = _rows(resp)
        if not rows:
            self._raise_missing_or_conflict(manuscript_id)
        return Manuscript.model_validate(rows[0])

    def delete_draft(self, manuscript_id: str, *, expected_version: int) -> None:
        resp = (
            self.client.table("manuscripts")
            .delete()
            .eq("id", manuscript_id)
            .eq("version", expected_version)
            .eq("status", ManuscriptStatus.DRAFT.value)
            .execute()
        )
        if not _rows(resp):
            self._raise_missing_or_conflict(manuscript_id)

    def apply_transition(self, write: TransitionWrite) -> TransitionResult:
        params = {
            "p_manuscript_id": write.manuscript_id,
            "p_expected_version": write.expected_version,
            "p_expected_status": write.expected_status.value,
            "p_new_status": write.new_status.value,
            "p_updated_at": write.updated_at.isoformat(),
            "p_updates": {
                k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in write.updates.items()
            },
            "p_decision": write.decision.model_dump(mode="json") if write.decision else None,
            "p_assignments": [a.model_dump(mode="json") for a in write.assignments],
            "p_log": write.log.model_dump(mode="json") if write.log else None,
        }
        try:
            resp = self.client.rpc("confflow_apply_transition", params).execute()
        except APIError as e:
            code = _error_code(e)
            if code == _NO_DATA_FOUND:
                raise NotFound("Manuscript not found") from e
            if code in {_SERIALIZATION_FAILURE, _UNIQUE_VIOLATION}:
                raise ConflictingWrite(f"Manuscript {write.manuscript_id} was modified concurrently") from e
            raise

        data = getattr(resp, "data", None) or {}
        if isinstance(data, list):
            data = data[0] if data else {}
        decision_row = data.get("decision")
        return TransitionResult(
            manuscript=Manuscript.model_validate(data["manuscript"]),
            decision=Decision.model_validate(decision_row) if decision_row else None,
            assignments=list(write.assignments),
        )

    # === Assignments / Reviews ===

    def get_assignment(self, assignment_id: str) -> Optional[ReviewAssignment]:
        try:
            resp = self.client.table("review_assignments").select("*").eq("id", assignment_id).limit(1).execute()
        except APIError as e:
            logger.info("assignment lookup failed for %s: %s", assignment_id, e)
            return None
        rows = _rows(resp)
        return ReviewAssignment.model_validate(rows[0]) if rows else None

    def list_assignments(self, manuscript_id: str) -> list[ReviewAssignment]:
        resp = (
            self.client.table("review_assignments")
            .select("*")
            .eq("manuscript_id", manuscript_id)
            .order("created_at")
            .execute()
        )
        return [ReviewAssignment.model_validate(r) for r in _rows(resp)]

    def list_assignments_for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]:
        resp = (
            self.client.table("review_assignments")
            .select("*")
            .eq("reviewer_id", reviewer_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [ReviewAssignment.model_validate(r) for r in _rows(resp)]

    def insert_assignments(
        self, manuscript_id: str, assignments: list[ReviewAssignment], *, expected_version: int
    ) -> list[ReviewAssignment]:
        current = self.get_manuscript(manuscript_id)
        if current is None:
            raise NotFound("Manuscript not found")
        # 同状态迁移：只追加指派并递增版本
        result = self.apply_transition(
            TransitionWrite(
                manuscript_id=manuscript_id,
                expected_version=expected_version,
                expected_status=current.status,
                new_status=current.status,
                updated_at=current.updated_at,
                assignments=assignments,
            )
        )
        return result.assignments

    def update_assignment_status(
        self,
        assignment_id: str,
        *,
        expected_status: AssignmentStatus,
        new_status: AssignmentStatus,
        responded_at: datetime,
    ) -> ReviewAssignment:
        resp = (
            self.client.table("review_assignments")
            .update({"status": new_status.value, "responded_at": responded_at.isoformat()})
            .eq("id", assignment_id)
            .eq("status", expected_status.value)
            .execute()
        )
        rows = _rows(resp)
        if not rows:
            if self.get_assignment(assignment_id) is None:
                raise NotFound("Assignment not found")
            raise ConflictingWrite("Assignment status changed concurrently")
        return ReviewAssignment.model_validate(rows[0])

    def insert_review(self, review: Review) -> Review:
        try:
            resp = self.client.table("reviews").insert(review.model_dump(mode="json")).execute()
        except APIError as e:
            if _error_code(e) == _UNIQUE_VIOLATION:
                raise AlreadySubmitted("Review already submitted for this assignment") from e
            raise
        rows = _rows(resp)
        return Review.model_validate(rows[0]) if rows else review

    def list_reviews(self, manuscript_id: str) -> list[Review]:
        resp = (
            self.client.table("reviews")
            .select("*")
            .eq("manuscript_id", manuscript_id)
            .order("submitted_at")
            .execute()
        )
        return [Review.model_validate(r) for r in _rows(resp)]

    # === Decisions / audit ===

    def list_decisions(self, manuscript_id: str) -> list[Decision]:
        resp = self.client.table("decisions").select("*").eq("manuscript_id", manuscript_id).execute()
        return sort_decisions_newest_first(Decision.model_validate(r) for r in _rows(resp))

    def list_transitions(self, manuscript_id: str) -> list[StatusTransition]:
        resp = (
            self.client.table("status_transition_logs")
            .select("manuscript_id,from_status,to_status,event,changed_by,comment,created_at")
            .eq("manuscript_id", manuscript_id)
            .order("created_at")
            .order("id")
            .execute()
        )
        return [StatusTransition.model_validate(r) for r in _rows(resp)]
