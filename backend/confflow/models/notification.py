from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class LifecycleEventType(str, Enum):
    DRAFT_CREATED = "manuscript.draft_created"
    MANUSCRIPT_SUBMITTED = "manuscript.submitted"
    MANUSCRIPT_RESUBMITTED = "manuscript.resubmitted"
    REVIEWERS_ASSIGNED = "assignment.created"
    ASSIGNMENT_ACCEPTED = "assignment.accepted"
    ASSIGNMENT_DECLINED = "assignment.declined"
    REVIEW_SUBMITTED = "review.submitted"
    DECISION_RECORDED = "decision.recorded"
    STATUS_CHANGED = "manuscript.status_changed"


class LifecycleEvent(BaseModel):
    """
    生命周期事件（交给 NotificationDispatcher 投递）

    中文注释:
    - 核心只保证“发生了什么事件 + 携带什么 payload”，不保证投递。
    - recipients 为建议接收人（用户 ID），由 dispatcher 决定如何通知。
    """

    type: LifecycleEventType
    manuscript_id: Optional[str] = None
    actor_id: Optional[str] = None
    recipients: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
