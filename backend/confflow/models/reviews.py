from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Recommendation(str, Enum):
    ACCEPT = "accept"
    MINOR_REVISION = "minor_revision"
    MAJOR_REVISION = "major_revision"
    REJECT = "reject"


# 审稿总分区间（沿用投稿系统审稿表单：4 个维度，每项 1-5 分）
MIN_REVIEW_SCORE = 4
MAX_REVIEW_SCORE = 20


class ReviewAssignment(BaseModel):
    """审稿指派（manuscript x reviewer），带 pending/accepted/declined 子状态"""

    id: str
    manuscript_id: str
    reviewer_id: str
    status: AssignmentStatus = AssignmentStatus.PENDING
    due_date: Optional[date] = None
    assigned_by: Optional[str] = None
    created_at: datetime
    responded_at: Optional[datetime] = None


class Review(BaseModel):
    """审稿报告模型（支持双通道评论）"""

    id: str
    assignment_id: str
    manuscript_id: str
    reviewer_id: str
    score: int = Field(..., ge=MIN_REVIEW_SCORE, le=MAX_REVIEW_SCORE)
    recommendation: Recommendation

    # Public (Author-visible)
    comment_to_author: Optional[str] = None

    # Confidential (Editor-only)
    comment_to_editor: Optional[str] = None

    submitted_at: datetime
