from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - 状态只能通过 LifecycleEngine（services/lifecycle_service.py）写入。
    - accepted / rejected 为终态。
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    REVISION_REQUIRED = "revision_required"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @classmethod
    def terminal(cls) -> set["ManuscriptStatus"]:
        return {cls.ACCEPTED, cls.REJECTED}

    @classmethod
    def editable(cls) -> set["ManuscriptStatus"]:
        # 作者仅在草稿与“需修改”阶段可编辑内容
        return {cls.DRAFT, cls.REVISION_REQUIRED}


class FileKind(str, Enum):
    MANUSCRIPT_ANONYMOUS = "manuscript_anonymous"
    TITLE_PAGE = "title_page"


class Author(BaseModel):
    name: str = ""
    email: str = ""
    affiliation: str = ""
    is_corresponding: bool = False
    user_id: Optional[str] = Field(None, description="关联的注册用户（共同作者借此获得所有权）")


class ManuscriptFile(BaseModel):
    id: str
    kind: FileKind
    path: str
    original_name: str
    size: int = 0
    content_type: str = "application/pdf"
    version: int = 1
    created_at: datetime


class Manuscript(BaseModel):
    """数据库中的完整稿件模型"""

    id: str
    title: str = ""
    abstract: str = ""
    keywords: list[str] = Field(default_factory=list)
    authors: list[Author] = Field(default_factory=list)
    track_id: Optional[str] = None
    conference_year: Optional[int] = None
    files: list[ManuscriptFile] = Field(default_factory=list)
    status: ManuscriptStatus = ManuscriptStatus.DRAFT
    created_by: str
    serial_number: Optional[str] = None
    submitted_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def owner_ids(self) -> frozenset[str]:
        ids = {self.created_by}
        for author in self.authors:
            if author.user_id:
                ids.add(author.user_id)
        return frozenset(ids)


class StatusTransition(BaseModel):
    manuscript_id: str
    from_status: Optional[ManuscriptStatus] = None
    to_status: ManuscriptStatus
    event: str
    changed_by: Optional[str] = None
    comment: Optional[str] = None
    created_at: datetime
