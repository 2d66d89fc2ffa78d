import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from confflow.core.errors import Unauthorized
from confflow.core.security import decode_identity_token
from confflow.schemas.token import IdentityClaims

logger = logging.getLogger("confflow.auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. 身份令牌由本服务签发（见 core/security.py），每个请求都重新校验签名与过期时间。
# 2. auto_error=False：缺少 Authorization 头时统一抛 Unauthorized（401），而不是 FastAPI 默认的 403。
security = HTTPBearer(auto_error=False)


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> IdentityClaims:
    """
    解码并验证 Bearer 身份令牌，返回不可变 claims。
    """
    if credentials is None or not (credentials.credentials or "").strip():
        raise Unauthorized("Missing bearer token")
    try:
        return decode_identity_token(credentials.credentials.strip())
    except Unauthorized as exc:
        logger.info("identity token rejected: %s", exc.reason)
        raise
