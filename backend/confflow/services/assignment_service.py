from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Iterable, Optional

from confflow.core.errors import ConflictingWrite, InvalidTransition, NotFound, ValidationFailed
from confflow.core.role_matrix import Action, ResourceScope, require_action
from confflow.models.manuscript import ManuscriptStatus
from confflow.models.notification import LifecycleEvent, LifecycleEventType
from confflow.models.reviews import AssignmentStatus, Recommendation, Review, ReviewAssignment
from confflow.models.user import Role
from confflow.repositories.base import ManuscriptRepository
from confflow.schemas.token import IdentityClaims
from confflow.services.lifecycle_service import LifecycleEngine, TransitionEvent
from confflow.services.notification_service import NotificationDispatcher, publish

logger = logging.getLogger("confflow.assignments")

# 乐观并发冲突时的最大重试次数（指派是幂等的，重试安全）
MAX_ASSIGN_ATTEMPTS = 3

_RESPONSE_EVENTS = {
    "accept": (TransitionEvent.ACCEPT_ASSIGNMENT, AssignmentStatus.ACCEPTED, LifecycleEventType.ASSIGNMENT_ACCEPTED),
    "decline": (TransitionEvent.DECLINE_ASSIGNMENT, AssignmentStatus.DECLINED, LifecycleEventType.ASSIGNMENT_DECLINED),
}


def _normalize_ids(reviewer_ids: Iterable[str]) -> list[str]:
    out: list[str] = []
    for raw in reviewer_ids or []:
        rid = str(raw or "").strip()
        if rid and rid not in out:
            out.append(rid)
    return out


class AssignmentService:
    """
    审稿指派 + 审稿提交。

    中文注释:
    - 稿件处于 submitted 时，新指派与 submitted -> under_review 在同一次原子写入中提交。
    - 已存在的非 declined 指派原样返回（幂等）。
    - 审稿提交不改变稿件状态。
    """

    def __init__(
        self,
        repository: ManuscriptRepository,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        engine: Optional[LifecycleEngine] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.engine = engine or LifecycleEngine(repository)

    def _validate_reviewers(self, reviewer_ids: list[str], owner_ids: frozenset[str]) -> None:
        bad: list[str] = []
        for rid in reviewer_ids:
            user = self.repository.get_user(rid)
            if user is None or not user.is_active or Role.REVIEWER not in user.roles:
                bad.append(f"reviewer_ids[{rid}]")
            elif rid in owner_ids:
                # 作者不能审自己的稿件
                bad.append(f"reviewer_ids[{rid}]")
        if bad:
            raise ValidationFailed(bad, "Reviewers must be active users with the reviewer role and not authors")

    def assign(
        self,
        manuscript_id: str,
        identity: IdentityClaims,
        reviewer_ids: Iterable[str],
        due_date: Optional[date] = None,
    ) -> list[ReviewAssignment]:
        require_action(identity, Action.ASSIGN_REVIEWERS)
        ids = _normalize_ids(reviewer_ids)
        if not ids:
            raise ValidationFailed(["reviewer_ids"])
        if due_date is not None and due_date < self.engine.now().date():
            raise ValidationFailed(["due_date"], "Due date must not be in the past")

        for attempt in range(1, MAX_ASSIGN_ATTEMPTS + 1):
            try:
                return self._assign_once(manuscript_id, identity, ids, due_date)
            except ConflictingWrite:
                if attempt >= MAX_ASSIGN_ATTEMPTS:
                    raise
                logger.info(
                    "[Assign] conflicting write on %s, retrying with fresh state (%s/%s)",
                    manuscript_id,
                    attempt,
                    MAX_ASSIGN_ATTEMPTS,
                )
        raise ConflictingWrite("Assignment could not be committed")

    def _assign_once(
        self,
        manuscript_id: str,
        identity: IdentityClaims,
        reviewer_ids: list[str],
        due_date: Optional[date],
    ) -> list[ReviewAssignment]:
        manuscript = self.engine.load(manuscript_id)
        if manuscript.status not in (ManuscriptStatus.SUBMITTED, ManuscriptStatus.UNDER_REVIEW):
            raise InvalidTransition(manuscript.status.value, TransitionEvent.ASSIGN_REVIEWER.value)
        self._validate_reviewers(reviewer_ids, manuscript.owner_ids)

        existing = {
            a.reviewer_id: a
            for a in self.repository.list_assignments(manuscript_id)
            if a.status != AssignmentStatus.DECLINED
        }
        now = self.engine.now()
        new_rows = [
            ReviewAssignment(
                id=str(uuid.uuid4()),
                manuscript_id=manuscript_id,
                reviewer_id=rid,
                status=AssignmentStatus.PENDING,
                due_date=due_date,
                assigned_by=identity.id,
                created_at=now,
            )
            for rid in reviewer_ids
            if rid not in existing
        ]

        if manuscript.status == ManuscriptStatus.SUBMITTED:
            self.engine.apply(
                manuscript,
                TransitionEvent.ASSIGN_REVIEWER,
                actor_id=identity.id,
                comment=f"assigned {len(reviewer_ids)} reviewer(s)",
                assignments=new_rows,
            )
        elif new_rows:
            self.repository.insert_assignments(manuscript_id, new_rows, expected_version=manuscript.version)

        if new_rows:
            publish(
                self.dispatcher,
                LifecycleEvent(
                    type=LifecycleEventType.REVIEWERS_ASSIGNED,
                    manuscript_id=manuscript_id,
                    actor_id=identity.id,
                    recipients=[a.reviewer_id for a in new_rows],
                    payload={
                        "title": manuscript.title,
                        "due_date": due_date.isoformat() if due_date else None,
                        "assignment_ids": [a.id for a in new_rows],
                    },
                ),
            )

        created = {a.reviewer_id: a for a in new_rows}
        return [existing.get(rid) or created[rid] for rid in reviewer_ids]

    def list_assignments_for_reviewer(self, identity: IdentityClaims) -> list[ReviewAssignment]:
        return self.repository.list_assignments_for_reviewer(identity.id)

    def _load_assignment(self, assignment_id: str) -> ReviewAssignment:
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found")
        return assignment

    def update_assignment_status(
        self, assignment_id: str, identity: IdentityClaims, action: str
    ) -> ReviewAssignment:
        if action not in _RESPONSE_EVENTS:
            raise ValidationFailed(["action"])
        event, new_status, event_type = _RESPONSE_EVENTS[action]

        assignment = self._load_assignment(assignment_id)
        require_action(
            identity,
            Action.RESPOND_TO_ASSIGNMENT,
            ResourceScope(reviewer_ids=frozenset({assignment.reviewer_id})),
        )
        if assignment.status != AssignmentStatus.PENDING:
            raise InvalidTransition(assignment.status.value, event.value)

        updated = self.repository.update_assignment_status(
            assignment_id,
            expected_status=AssignmentStatus.PENDING,
            new_status=new_status,
            responded_at=self.engine.now(),
        )
        logger.info("[Assign] %s %s by reviewer %s", assignment_id, new_status.value, identity.id)

        publish(
            self.dispatcher,
            LifecycleEvent(
                type=event_type,
                manuscript_id=updated.manuscript_id,
                actor_id=identity.id,
                recipients=[updated.assigned_by] if updated.assigned_by else [],
                payload={"assignment_id": updated.id},
            ),
        )
        return updated

    def submit_review(
        self,
        assignment_id: str,
        identity: IdentityClaims,
        *,
        score: int,
        recommendation: Recommendation,
        comment_to_author: str = "",
        comment_to_editor: str = "",
    ) -> Review:
        assignment = self._load_assignment(assignment_id)
        require_action(
            identity,
            Action.SUBMIT_REVIEW,
            ResourceScope(reviewer_ids=frozenset({assignment.reviewer_id})),
        )
        if assignment.status != AssignmentStatus.ACCEPTED:
            raise InvalidTransition(assignment.status.value, TransitionEvent.SUBMIT_REVIEW.value)

        review = self.repository.insert_review(
            Review(
                id=str(uuid.uuid4()),
                assignment_id=assignment.id,
                manuscript_id=assignment.manuscript_id,
                reviewer_id=identity.id,
                score=score,
                recommendation=recommendation,
                comment_to_author=comment_to_author or None,
                comment_to_editor=comment_to_editor or None,
                submitted_at=self.engine.now(),
            )
        )
        logger.info("[Review] submitted for assignment %s", assignment.id)

        publish(
            self.dispatcher,
            LifecycleEvent(
                type=LifecycleEventType.REVIEW_SUBMITTED,
                manuscript_id=assignment.manuscript_id,
                actor_id=identity.id,
                recipients=[assignment.assigned_by] if assignment.assigned_by else [],
                payload={"assignment_id": assignment.id, "recommendation": recommendation.value},
            ),
        )
        return review
