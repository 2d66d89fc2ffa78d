from __future__ import annotations

import logging
import uuid
from typing import Optional

from confflow.core.errors import InvalidTransition
from confflow.core.role_matrix import Action, require_action
from confflow.models.decision import Decision, DecisionResult
from confflow.models.manuscript import ManuscriptStatus
from confflow.models.notification import LifecycleEvent, LifecycleEventType
from confflow.repositories.base import ManuscriptRepository
from confflow.schemas.token import IdentityClaims
from confflow.services.lifecycle_service import DECISION_EVENTS, LifecycleEngine
from confflow.services.manuscript_service import manuscript_scope
from confflow.services.notification_service import NotificationDispatcher, publish

logger = logging.getLogger("confflow.decisions")

# 终态 -> 与之一致的决策结论（仅追加审计记录，不改变状态）
_TERMINAL_RESULTS = {
    ManuscriptStatus.ACCEPTED: DecisionResult.ACCEPT,
    ManuscriptStatus.REJECTED: DecisionResult.REJECT,
}


class DecisionService:
    """
    编辑决策（只追加）+ 决策历史查询。

    中文注释:
    - 决策记录与状态变更在同一次原子写入中提交；并发决策只有一个能成功，
      另一个得到 ConflictingWrite（或重新读取后看到已变化的状态）。
    - 决策冲突不自动重试：两个编辑同时给出不同结论时，需要人工重新确认。
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

    def decide(
        self,
        manuscript_id: str,
        identity: IdentityClaims,
        result: DecisionResult,
        note: Optional[str] = None,
    ) -> Decision:
        require_action(identity, Action.RECORD_DECISION)
        manuscript = self.engine.load(manuscript_id)
        event = DECISION_EVENTS[result]

        decision = Decision(
            id=str(uuid.uuid4()),
            manuscript_id=manuscript_id,
            result=result,
            note=(note or "").strip() or None,
            decided_by=identity.id,
            created_at=self.engine.now(),
        )

        if manuscript.status in ManuscriptStatus.terminal():
            if _TERMINAL_RESULTS[manuscript.status] != result:
                raise InvalidTransition(manuscript.status.value, event.value)
            written = self.engine.append_without_transition(manuscript, decision=decision)
            logger.info(
                "[Decision] %s restated on terminal manuscript %s by %s",
                result.value,
                manuscript_id,
                identity.id,
            )
            return written.decision or decision

        written = self.engine.apply(
            manuscript,
            event,
            actor_id=identity.id,
            comment=decision.note,
            decision=decision,
        )
        recorded = written.decision or decision

        publish(
            self.dispatcher,
            LifecycleEvent(
                type=LifecycleEventType.DECISION_RECORDED,
                manuscript_id=manuscript_id,
                actor_id=identity.id,
                recipients=sorted(written.manuscript.owner_ids),
                payload={
                    "result": result.value,
                    "note": recorded.note,
                    "status": written.manuscript.status.value,
                    "title": written.manuscript.title,
                },
            ),
        )
        return recorded

    def _authorize_view(self, manuscript_id: str, identity: IdentityClaims) -> None:
        manuscript = self.engine.load(manuscript_id)
        scope = manuscript_scope(manuscript, self.repository.list_assignments(manuscript_id))
        require_action(identity, Action.VIEW_DECISIONS, scope)

    def get_decision_history(self, manuscript_id: str, identity: IdentityClaims) -> list[Decision]:
        self._authorize_view(manuscript_id, identity)
        return self.repository.list_decisions(manuscript_id)

    def get_current_decision(self, manuscript_id: str, identity: IdentityClaims) -> Optional[Decision]:
        history = self.get_decision_history(manuscript_id, identity)
        return history[0] if history else None
