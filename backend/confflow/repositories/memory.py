from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Optional

from confflow.core.errors import AlreadyExists, AlreadySubmitted, ConflictingWrite, NotFound
from confflow.models.decision import Decision
from confflow.models.manuscript import Manuscript, ManuscriptStatus, StatusTransition
from confflow.models.reviews import AssignmentStatus, Review, ReviewAssignment
from confflow.models.user import User
from confflow.repositories.base import (
    ManuscriptRepository,
    TransitionResult,
    TransitionWrite,
    check_assignment_uniqueness,
    check_content_updates,
    sort_decisions_newest_first,
)


class InMemoryRepository(ManuscriptRepository):
    """
    进程内仓储（本地开发 / 测试）。

    中文注释:
    - 单把锁保护全部表：所有“先检查再写入”都在锁内完成。
    - 读写都做深拷贝，调用方拿到的对象修改后不会影响存储。
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._manuscripts: dict[str, Manuscript] = {}
        self._assignments: dict[str, ReviewAssignment] = {}
        self._reviews: dict[str, Review] = {}
        self._decisions: dict[str, list[Decision]] = {}
        self._transitions: dict[str, list[StatusTransition]] = {}

    # === Users ===

    def add_user(self, user: User) -> User:
        with self._lock:
            if self._find_user_by_email(user.email) is not None:
                raise AlreadyExists(f"Email already registered: {user.email}")
            self._users[user.id] = user.model_copy(deep=True)
            return user.model_copy(deep=True)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        needle = (email or "").strip().lower()
        for user in self._users.values():
            if user.email.strip().lower() == needle:
                return user
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            user = self._find_user_by_email(email)
            return user.model_copy(deep=True) if user else None

    def update_user(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise NotFound("User not found")
            self._users[user.id] = user.model_copy(deep=True)
            return user.model_copy(deep=True)

    # === Manuscripts ===

    def insert_manuscript(self, manuscript: Manuscript, log: StatusTransition) -> Manuscript:
        with self._lock:
            if manuscript.id in self._manuscripts:
                raise AlreadyExists("Manuscript already exists")
            self._manuscripts[manuscript.id] = manuscript.model_copy(deep=True)
            self._transitions.setdefault(manuscript.id, []).append(log.model_copy(deep=True))
            return manuscript.model_copy(deep=True)

    def get_manuscript(self, manuscript_id: str) -> Optional[Manuscript]:
        with self._lock:
            ms = self._manuscripts.get(manuscript_id)
            return ms.model_copy(deep=True) if ms else None

    def list_manuscripts(self) -> list[Manuscript]:
        with self._lock:
            items = [m.model_copy(deep=True) for m in self._manuscripts.values()]
        return sorted(items, key=lambda m: m.created_at, reverse=True)

    def list_manuscripts_for_user(self, user_id: str) -> list[Manuscript]:
        with self._lock:
            assigned = {
                a.manuscript_id
                for a in self._assignments.values()
                if a.reviewer_id == user_id and a.status != AssignmentStatus.DECLINED
            }
            items = [
                m.model_copy(deep=True)
                for m in self._manuscripts.values()
                if user_id in m.owner_ids or m.id in assigned
            ]
        return sorted(items, key=lambda m: m.created_at, reverse=True)

    def _load_for_write(self, manuscript_id: str, expected_version: int) -> Manuscript:
        current = self._manuscripts.get(manuscript_id)
        if current is None:
            raise NotFound("Manuscript not found")
        if current.version != expected_version:
            raise ConflictingWrite(
                f"Manuscript {manuscript_id} was modified concurrently "
                f"(expected version {expected_version}, found {current.version})"
            )
        return current

    def update_content(
        self,
        manuscript_id: str,
        *,
        expected_version: int,
        changes: dict[str, Any],
        updated_at: datetime,
    ) -> Manuscript:
        check_content_updates(changes)
        with self._lock:
            current = self._load_for_write(manuscript_id, expected_version)
            updated = current.model_copy(
                update={**changes, "version": current.version + 1, "updated_at": updated_at},
                deep=True,
            )
            self._manuscripts[manuscript_id] = updated
            return updated.model_copy(deep=True)

    def delete_draft(self, manuscript_id: str, *, expected_version: int) -> None:
        with self._lock:
            current = self._load_for_write(manuscript_id, expected_version)
            if current.status != ManuscriptStatus.DRAFT:
                raise ConflictingWrite("Only drafts can be discarded")
            del self._manuscripts[manuscript_id]
            self._transitions.pop(manuscript_id, None)

    def apply_transition(self, write: TransitionWrite) -> TransitionResult:
        with self._lock:
            current = self._load_for_write(write.manuscript_id, write.expected_version)
            if current.status != write.expected_status:
                raise ConflictingWrite(
                    f"Manuscript status changed to {current.status.value} before commit"
                )
            check_assignment_uniqueness(
                [a for a in self._assignments.values() if a.manuscript_id == write.manuscript_id],
                write.assignments,
            )

            updated = current.model_copy(
                update={
                    **write.updates,
                    "status": write.new_status,
                    "version": current.version + 1,
                    "updated_at": write.updated_at,
                },
                deep=True,
            )
            self._manuscripts[write.manuscript_id] = updated

            decision: Optional[Decision] = None
            if write.decision is not None:
                history = self._decisions.setdefault(write.manuscript_id, [])
                decision = write.decision.model_copy(update={"sequence": len(history) + 1}, deep=True)
                history.append(decision)

            for row in write.assignments:
                self._assignments[row.id] = row.model_copy(deep=True)

            if write.log is not None:
                self._transitions.setdefault(write.manuscript_id, []).append(
                    write.log.model_copy(deep=True)
                )

            return TransitionResult(
                manuscript=updated.model_copy(deep=True),
                decision=decision.model_copy(deep=True) if decision else None,
                assignments=[a.model_copy(deep=True) for a in write.assignments],
            )

    # === Assignments / Reviews ===

    def get_assignment(self, assignment_id: str) -> Optional[ReviewAssignment]:
        with self._lock:
            row = self._assignments.get(assignment_id)
            return row.model_copy(deep=True) if row else None

    def list_assignments(self, manuscript_id: str) -> list[ReviewAssignment]:
        with self._lock:
            rows = [a.model_copy(deep=True) for a in self._assignments.values() if a.manuscript_id == manuscript_id]
        return sorted(rows, key=lambda a: a.created_at)

    def list_assignments_for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]:
        with self._lock:
            rows = [a.model_copy(deep=True) for a in self._assignments.values() if a.reviewer_id == reviewer_id]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def insert_assignments(
        self, manuscript_id: str, assignments: list[ReviewAssignment], *, expected_version: int
    ) -> list[ReviewAssignment]:
        with self._lock:
            current = self._load_for_write(manuscript_id, expected_version)
            check_assignment_uniqueness(
                [a for a in self._assignments.values() if a.manuscript_id == manuscript_id],
                assignments,
            )
            for row in assignments:
                self._assignments[row.id] = row.model_copy(deep=True)
            self._manuscripts[manuscript_id] = current.model_copy(
                update={"version": current.version + 1}, deep=True
            )
            return [a.model_copy(deep=True) for a in assignments]

    def update_assignment_status(
        self,
        assignment_id: str,
        *,
        expected_status: AssignmentStatus,
        new_status: AssignmentStatus,
        responded_at: datetime,
    ) -> ReviewAssignment:
        with self._lock:
            row = self._assignments.get(assignment_id)
            if row is None:
                raise NotFound("Assignment not found")
            if row.status != expected_status:
                raise ConflictingWrite(f"Assignment status changed to {row.status.value}")
            updated = row.model_copy(update={"status": new_status, "responded_at": responded_at}, deep=True)
            self._assignments[assignment_id] = updated
            return updated.model_copy(deep=True)

    def insert_review(self, review: Review) -> Review:
        with self._lock:
            for existing in self._reviews.values():
                if existing.assignment_id == review.assignment_id:
                    raise AlreadySubmitted("Review already submitted for this assignment")
            self._reviews[review.id] = review.model_copy(deep=True)
            return review.model_copy(deep=True)

    def list_reviews(self, manuscript_id: str) -> list[Review]:
        with self._lock:
            rows = [r.model_copy(deep=True) for r in self._reviews.values() if r.manuscript_id == manuscript_id]
        return sorted(rows, key=lambda r: r.submitted_at)

    # === Decisions / audit ===

    def list_decisions(self, manuscript_id: str) -> list[Decision]:
        with self._lock:
            rows = [d.model_copy(deep=True) for d in self._decisions.get(manuscript_id, [])]
        return sort_decisions_newest_first(rows)

    def list_transitions(self, manuscript_id: str) -> list[StatusTransition]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._transitions.get(manuscript_id, [])]
