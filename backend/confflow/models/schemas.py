from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from confflow.models.reviews import MAX_REVIEW_SCORE, MIN_REVIEW_SCORE, Recommendation
from confflow.models.user import Role

# === 请求载荷模型 (Pydantic v2) ===


class AuthorInput(BaseModel):
    name: str = Field("", max_length=200)
    email: str = Field("", max_length=320)
    affiliation: str = Field("", max_length=300)
    is_corresponding: bool = False
    user_id: Optional[str] = None

    @field_validator("name", "email", "affiliation", mode="before")
    @classmethod
    def strip_text(cls, value):
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value


class ManuscriptFields(BaseModel):
    """
    草稿字段（创建/更新共用）

    中文注释: 草稿阶段允许字段为空，完整性校验只在 submit/resubmit 时执行。
    """

    title: Optional[str] = Field(None, max_length=500, description="稿件标题")
    abstract: Optional[str] = Field(None, max_length=5000, description="稿件摘要")
    keywords: Optional[list[str]] = Field(None, max_length=20)
    authors: Optional[list[AuthorInput]] = Field(None, max_length=50)
    track_id: Optional[str] = Field(None, max_length=100)
    conference_year: Optional[int] = Field(None, ge=1900, le=3000)

    @field_validator("title", "abstract", "track_id", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value):
        # 中文注释: 写入前统一做 trim
        if value is None:
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, value):
        if value is None:
            return None
        out: list[str] = []
        for item in value:
            kw = str(item or "").strip()
            if kw and kw not in out:
                out.append(kw)
        return out


class AssignReviewersRequest(BaseModel):
    reviewer_ids: list[str] = Field(..., description="审稿人用户 ID 列表")
    due_date: Optional[date] = Field(None, description="审稿截止日期")


class AssignmentResponseRequest(BaseModel):
    action: Literal["accept", "decline"]


class ReviewSubmission(BaseModel):
    score: int = Field(..., ge=MIN_REVIEW_SCORE, le=MAX_REVIEW_SCORE)
    recommendation: Recommendation
    comment_to_author: str = Field(default="", max_length=20000)
    comment_to_editor: str = Field(default="", max_length=20000)


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    display_name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8, max_length=72)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=72)


class DevTokenRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class RoleUpdateRequest(BaseModel):
    roles: list[Role] = Field(..., min_length=1)


class UserStatusUpdateRequest(BaseModel):
    action: Literal["enable", "disable"]


class ManuscriptUpdateRequest(ManuscriptFields):
    # 乐观并发：传入读取时的 version，不一致时返回 409 conflicting_write
    version: Optional[int] = Field(None, ge=1)
