from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from confflow.core.errors import InvalidTransition, NotFound, ValidationFailed
from confflow.models.decision import Decision, DecisionResult
from confflow.models.manuscript import Manuscript, ManuscriptStatus, StatusTransition
from confflow.models.reviews import ReviewAssignment
from confflow.repositories.base import ManuscriptRepository, TransitionResult, TransitionWrite

logger = logging.getLogger("confflow.lifecycle")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class TransitionEvent(str, Enum):
    CREATE_DRAFT = "create_draft"
    SUBMIT = "submit"
    ASSIGN_REVIEWER = "assign_reviewer"
    DECIDE_REVISE = "decide_revise"
    DECIDE_ACCEPT = "decide_accept"
    DECIDE_REJECT = "decide_reject"
    RESUBMIT = "resubmit"
    SUBMIT_REVIEW = "submit_review"
    ACCEPT_ASSIGNMENT = "accept_assignment"
    DECLINE_ASSIGNMENT = "decline_assignment"


_DECISION_SOURCES = (ManuscriptStatus.SUBMITTED, ManuscriptStatus.UNDER_REVIEW)

# (当前状态, 事件) -> 下一状态；表外组合一律 InvalidTransition
TRANSITIONS: dict[tuple[Optional[ManuscriptStatus], TransitionEvent], ManuscriptStatus] = {
    (None, TransitionEvent.CREATE_DRAFT): ManuscriptStatus.DRAFT,
    (ManuscriptStatus.DRAFT, TransitionEvent.SUBMIT): ManuscriptStatus.SUBMITTED,
    (ManuscriptStatus.SUBMITTED, TransitionEvent.ASSIGN_REVIEWER): ManuscriptStatus.UNDER_REVIEW,
    (ManuscriptStatus.REVISION_REQUIRED, TransitionEvent.RESUBMIT): ManuscriptStatus.SUBMITTED,
    **{(s, TransitionEvent.DECIDE_REVISE): ManuscriptStatus.REVISION_REQUIRED for s in _DECISION_SOURCES},
    **{(s, TransitionEvent.DECIDE_ACCEPT): ManuscriptStatus.ACCEPTED for s in _DECISION_SOURCES},
    **{(s, TransitionEvent.DECIDE_REJECT): ManuscriptStatus.REJECTED for s in _DECISION_SOURCES},
}

DECISION_EVENTS: dict[DecisionResult, TransitionEvent] = {
    DecisionResult.ACCEPT: TransitionEvent.DECIDE_ACCEPT,
    DecisionResult.REJECT: TransitionEvent.DECIDE_REJECT,
    DecisionResult.REVISE: TransitionEvent.DECIDE_REVISE,
}


def next_status(current: Optional[ManuscriptStatus], event: TransitionEvent) -> ManuscriptStatus:
    """
    纯查表：返回下一状态，不合法时抛 InvalidTransition(current, event)。
    """
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(current.value if current else None, event.value)
    return target


def reachable_statuses() -> set[ManuscriptStatus]:
    """从 (none) 出发沿迁移表可达的全部状态。"""
    seen: set[ManuscriptStatus] = set()
    frontier: list[Optional[ManuscriptStatus]] = [None]
    while frontier:
        current = frontier.pop()
        for (source, _event), target in TRANSITIONS.items():
            if source == current and target not in seen:
                seen.add(target)
                frontier.append(target)
    return seen


def generate_serial_number(now: datetime) -> str:
    # SUB + UTC 时间戳(YYYYMMDDHHMMSS) + 3 位随机数
    return f"SUB{now.astimezone(timezone.utc):%Y%m%d%H%M%S}{secrets.randbelow(1000):03d}"


def completeness_errors(manuscript: Manuscript) -> list[str]:
    """
    提交前完整性检查，返回缺失/非法的字段名（空列表表示通过）。
    """
    fields: list[str] = []
    if not (manuscript.title or "").strip():
        fields.append("title")
    if not (manuscript.abstract or "").strip():
        fields.append("abstract")

    if not manuscript.authors:
        fields.append("authors")
    else:
        for idx, author in enumerate(manuscript.authors):
            if not (author.name or "").strip():
                fields.append(f"authors[{idx}].name")
            if not EMAIL_PATTERN.match((author.email or "").strip()):
                fields.append(f"authors[{idx}].email")
        corresponding = sum(1 for a in manuscript.authors if a.is_corresponding)
        if corresponding != 1:
            fields.append("authors.is_corresponding")

    if not manuscript.files:
        fields.append("files")
    return fields


class LifecycleEngine:
    """
    稿件状态机：唯一允许写 manuscripts.status 的组件。

    中文注释:
    - apply() = 读取 -> 查表计算下一状态 -> 守卫校验 -> 一次原子写入（带 expected_version）。
    - 权限校验由调用方（manuscript/assignment/decision service）先完成。
    - 通知在调用方提交成功后再发，状态机本身不做任何 I/O 之外的副作用。
    """

    def __init__(
        self,
        repository: ManuscriptRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def load(self, manuscript_id: str) -> Manuscript:
        manuscript = self.repository.get_manuscript(manuscript_id)
        if manuscript is None:
            raise NotFound("Manuscript not found")
        return manuscript

    def apply(
        self,
        manuscript: Manuscript,
        event: TransitionEvent,
        *,
        actor_id: str,
        comment: Optional[str] = None,
        decision: Optional[Decision] = None,
        assignments: Iterable[ReviewAssignment] = (),
    ) -> TransitionResult:
        """
        基于已读取的快照执行迁移；快照过期时仓储抛 ConflictingWrite。
        """
        current = manuscript.status
        target = next_status(current, event)

        if event in (TransitionEvent.SUBMIT, TransitionEvent.RESUBMIT):
            missing = completeness_errors(manuscript)
            if missing:
                raise ValidationFailed(missing)

        now = self.now()
        updates: dict[str, object] = {}
        if event in (TransitionEvent.SUBMIT, TransitionEvent.RESUBMIT):
            updates["submitted_at"] = now
            if event is TransitionEvent.SUBMIT and not manuscript.serial_number:
                updates["serial_number"] = generate_serial_number(now)

        result = self.repository.apply_transition(
            TransitionWrite(
                manuscript_id=manuscript.id,
                expected_version=manuscript.version,
                expected_status=current,
                new_status=target,
                updated_at=now,
                updates=updates,
                decision=decision,
                assignments=list(assignments),
                log=StatusTransition(
                    manuscript_id=manuscript.id,
                    from_status=current,
                    to_status=target,
                    event=event.value,
                    changed_by=actor_id,
                    comment=comment,
                    created_at=now,
                ),
            )
        )
        logger.info(
            "[Lifecycle] %s: %s -> %s by %s (version %s)",
            manuscript.id,
            current.value,
            target.value,
            actor_id,
            result.manuscript.version,
        )
        return result

    def append_without_transition(
        self,
        manuscript: Manuscript,
        *,
        decision: Optional[Decision] = None,
        assignments: Iterable[ReviewAssignment] = (),
    ) -> TransitionResult:
        """
        状态不变的原子写入（终态审计决策），仍带版本校验。
        """
        return self.repository.apply_transition(
            TransitionWrite(
                manuscript_id=manuscript.id,
                expected_version=manuscript.version,
                expected_status=manuscript.status,
                new_status=manuscript.status,
                updated_at=self.now(),
                decision=decision,
                assignments=list(assignments),
            )
        )

    def record_draft_created(self, manuscript: Manuscript, *, actor_id: str) -> Manuscript:
        target = next_status(None, TransitionEvent.CREATE_DRAFT)
        draft = manuscript.model_copy(update={"status": target, "version": 1})
        log = StatusTransition(
            manuscript_id=draft.id,
            from_status=None,
            to_status=target,
            event=TransitionEvent.CREATE_DRAFT.value,
            changed_by=actor_id,
            created_at=draft.created_at,
        )
        return self.repository.insert_manuscript(draft, log)
