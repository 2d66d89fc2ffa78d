from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    """
    用户角色（非互斥，一个用户可同时持有多个角色）。
    """

    AUTHOR = "author"
    REVIEWER = "reviewer"
    EDITOR = "editor"
    CHIEF_EDITOR = "chief_editor"
    ADMIN = "admin"


def normalize_role(value: str | Role | None) -> Role | None:
    if isinstance(value, Role):
        return value
    v = str(value or "").strip().lower()
    if not v:
        return None
    try:
        return Role(v)
    except ValueError:
        return None


class User(BaseModel):
    id: str
    email: str
    display_name: str
    roles: set[Role] = Field(default_factory=lambda: {Role.AUTHOR})
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    # bcrypt 哈希；不参与序列化，接口响应中永远不会出现
    password_hash: str | None = Field(default=None, exclude=True, repr=False)
