from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from confflow.models.user import Role


class IdentityClaims(BaseModel):
    """
    身份令牌载荷（不可变 claims）

    中文注释:
    - 每次请求都会重新校验签名/过期；服务端不保存 session。
    - roles 为签发时刻的角色快照，角色变更需重新签发令牌后生效。
    """

    model_config = ConfigDict(frozen=True)

    sub: str = Field(..., min_length=1, description="用户 ID")
    email: str
    display_name: str = ""
    roles: frozenset[Role] = Field(default_factory=frozenset)
    iat: int
    exp: int = Field(..., description="Unix timestamp (seconds)")

    @property
    def id(self) -> str:
        return self.sub


class TokenResponseData(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: int


class TokenResponse(BaseModel):
    success: bool = True
    data: TokenResponseData
