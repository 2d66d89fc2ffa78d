from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from confflow.core.role_matrix import Capability
from confflow.models.decision import Decision
from confflow.models.manuscript import Manuscript
from confflow.models.reviews import Recommendation, ReviewAssignment


class ReviewView(BaseModel):
    """
    按请求者过滤后的审稿报告。

    中文注释:
    - reviewer_id 对作者隐藏（匿名）。
    - comment_to_editor 仅对持有 view_all_reviews 的请求者可见。
    """

    id: str
    assignment_id: str
    reviewer_id: str | None = None
    score: int
    recommendation: Recommendation
    comment_to_author: str | None = None
    comment_to_editor: str | None = None
    submitted_at: datetime


class ManuscriptView(BaseModel):
    manuscript: Manuscript
    assignments: list[ReviewAssignment] = Field(default_factory=list)
    reviews: list[ReviewView] = Field(default_factory=list)
    decisions: list[Decision] | None = None
    current_decision: Decision | None = None
    capabilities: list[Capability] = Field(default_factory=list)
