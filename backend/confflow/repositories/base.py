from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from confflow.core.errors import ConflictingWrite
from confflow.models.decision import Decision
from confflow.models.manuscript import Manuscript, ManuscriptStatus, StatusTransition
from confflow.models.reviews import AssignmentStatus, Review, ReviewAssignment
from confflow.models.user import User

# 作者可直接修改的稿件字段（status/version/serial_number 等只能由仓储/状态机写入）
CONTENT_FIELDS = frozenset(
    {"title", "abstract", "keywords", "authors", "track_id", "conference_year", "files"}
)


@dataclass
class TransitionWrite:
    """
    一次原子写入的全部内容。

    中文注释:
    - expected_version / expected_status 为乐观并发条件；不满足时仓储抛 ConflictingWrite。
    - new_status 与 expected_status 相同表示“只追加记录、不变更状态”（终态审计决策）。
    - decision.sequence 由仓储在写入时分配。
    """

    manuscript_id: str
    expected_version: int
    expected_status: ManuscriptStatus
    new_status: ManuscriptStatus
    updated_at: datetime
    updates: dict[str, Any] = field(default_factory=dict)
    decision: Optional[Decision] = None
    assignments: list[ReviewAssignment] = field(default_factory=list)
    log: Optional[StatusTransition] = None


@dataclass
class TransitionResult:
    manuscript: Manuscript
    decision: Optional[Decision] = None
    assignments: list[ReviewAssignment] = field(default_factory=list)


def check_content_updates(changes: dict[str, Any]) -> None:
    unknown = set(changes) - CONTENT_FIELDS
    if unknown:
        raise ValueError(f"Not a content field: {', '.join(sorted(unknown))}")


def check_assignment_uniqueness(
    existing: Iterable[ReviewAssignment], new_rows: Iterable[ReviewAssignment]
) -> None:
    """
    (manuscript, reviewer) 至多一条非 declined 指派。
    """
    taken = {
        (a.manuscript_id, a.reviewer_id)
        for a in existing
        if a.status != AssignmentStatus.DECLINED
    }
    for row in new_rows:
        key = (row.manuscript_id, row.reviewer_id)
        if key in taken:
            raise ConflictingWrite(f"Reviewer {row.reviewer_id} already assigned")
        taken.add(key)


def sort_decisions_newest_first(decisions: Iterable[Decision]) -> list[Decision]:
    return sorted(decisions, key=lambda d: (d.created_at, d.sequence), reverse=True)


class ManuscriptRepository(ABC):
    """
    持久化边界（稿件/指派/审稿/决策/审计日志/用户）。

    所有改变稿件状态的写入都走 apply_transition，保证“版本校验 + 状态 + 附属记录”一次提交。
    """

    # === Users ===

    @abstractmethod
    def add_user(self, user: User) -> User:
        """邮箱重复（大小写不敏感）时抛 AlreadyExists。"""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def update_user(self, user: User) -> User: ...

    # === Manuscripts ===

    @abstractmethod
    def insert_manuscript(self, manuscript: Manuscript, log: StatusTransition) -> Manuscript: ...

    @abstractmethod
    def get_manuscript(self, manuscript_id: str) -> Optional[Manuscript]: ...

    @abstractmethod
    def list_manuscripts(self) -> list[Manuscript]: ...

    @abstractmethod
    def list_manuscripts_for_user(self, user_id: str) -> list[Manuscript]:
        """用户拥有的稿件 + 被指派（非 declined）审稿的稿件。"""

    @abstractmethod
    def update_content(
        self,
        manuscript_id: str,
        *,
        expected_version: int,
        changes: dict[str, Any],
        updated_at: datetime,
    ) -> Manuscript:
        """只改内容字段；版本不匹配抛 ConflictingWrite。"""

    @abstractmethod
    def delete_draft(self, manuscript_id: str, *, expected_version: int) -> None: ...

    @abstractmethod
    def apply_transition(self, write: TransitionWrite) -> TransitionResult: ...

    # === Assignments / Reviews ===

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[ReviewAssignment]: ...

    @abstractmethod
    def list_assignments(self, manuscript_id: str) -> list[ReviewAssignment]: ...

    @abstractmethod
    def list_assignments_for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]: ...

    @abstractmethod
    def insert_assignments(
        self, manuscript_id: str, assignments: list[ReviewAssignment], *, expected_version: int
    ) -> list[ReviewAssignment]:
        """稿件已在 under_review 时只追加指派（仍校验版本，避免与决策并发）。"""

    @abstractmethod
    def update_assignment_status(
        self,
        assignment_id: str,
        *,
        expected_status: AssignmentStatus,
        new_status: AssignmentStatus,
        responded_at: datetime,
    ) -> ReviewAssignment: ...

    @abstractmethod
    def insert_review(self, review: Review) -> Review:
        """同一指派第二次提交抛 AlreadySubmitted。"""

    @abstractmethod
    def list_reviews(self, manuscript_id: str) -> list[Review]: ...

    # === Decisions / audit ===

    @abstractmethod
    def list_decisions(self, manuscript_id: str) -> list[Decision]:
        """按时间倒序（最新在前）。"""

    @abstractmethod
    def list_transitions(self, manuscript_id: str) -> list[StatusTransition]:
        """按时间正序。"""
