from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class DecisionResult(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    REVISE = "revise"


class Decision(BaseModel):
    """
    编辑决策记录（只追加，不覆盖）。

    中文注释:
    - “当前决策”= 按 created_at（同时间戳按 sequence）排序后的最新一条。
    - sequence 由仓储层在写入时分配，保证同一稿件内严格递增。
    """

    id: str
    manuscript_id: str
    result: DecisionResult
    note: str | None = None
    decided_by: str
    created_at: datetime
    sequence: int = 0


class DecisionRequest(BaseModel):
    result: DecisionResult = Field(..., description="决策结论")
    note: str | None = Field(default=None, max_length=5000, description="决策说明（作者可见）")
