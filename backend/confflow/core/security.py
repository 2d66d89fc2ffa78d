from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

import bcrypt
import jwt

from confflow.core.config import SessionTokenConfig
from confflow.core.errors import Unauthorized
from confflow.models.user import Role, User, normalize_role
from confflow.schemas.token import IdentityClaims


def _get_token_config() -> SessionTokenConfig:
    """
    身份令牌签名配置。

    中文注释:
    - 严禁复用 `SUPABASE_SERVICE_ROLE_KEY`（它是最高权限密钥，绝不能参与 token 签名）。
    - 每次调用都重新读取环境变量，便于测试 monkeypatch。
    """

    cfg = SessionTokenConfig.from_env()
    if not cfg.secret:
        raise RuntimeError("SESSION_JWT_SECRET/SECRET_KEY not configured")
    return cfg


def _normalize_roles(raw: Iterable[object] | None) -> frozenset[Role]:
    out: set[Role] = set()
    for item in raw or []:
        role = normalize_role(item)  # type: ignore[arg-type]
        if role is not None:
            out.add(role)
    return frozenset(out)


def create_identity_token(
    *,
    user: User,
    expires_in_seconds: int | None = None,
    now: datetime | None = None,
) -> tuple[str, IdentityClaims]:
    cfg = _get_token_config()
    issued = now or datetime.now(timezone.utc)
    ttl = expires_in_seconds if expires_in_seconds is not None else cfg.ttl_seconds
    iat = int(issued.timestamp())
    exp = int((issued + timedelta(seconds=ttl)).timestamp())
    claims = IdentityClaims(
        sub=user.id,
        email=user.email,
        display_name=user.display_name,
        roles=frozenset(user.roles),
        iat=iat,
        exp=exp,
    )
    payload = {
        "sub": claims.sub,
        "email": claims.email,
        "display_name": claims.display_name,
        "roles": sorted(r.value for r in claims.roles),
        "iat": iat,
        "exp": exp,
        "iss": cfg.issuer,
        "aud": cfg.audience,
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm), claims


def decode_identity_token(token: str) -> IdentityClaims:
    """
    解码并校验身份令牌。

    抛出:
    - Unauthorized: token 缺失/无效/过期/载荷不完整
    - RuntimeError: 服务端密钥未配置
    """

    cfg = _get_token_config()
    if not token:
        raise Unauthorized("Missing identity token")

    try:
        raw = jwt.decode(
            token,
            cfg.secret,
            algorithms=[cfg.algorithm],
            audience=cfg.audience,
            issuer=cfg.issuer,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Identity token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid identity token")

    try:
        return IdentityClaims(
            sub=str(raw.get("sub") or ""),
            email=str(raw.get("email") or ""),
            display_name=str(raw.get("display_name") or ""),
            roles=_normalize_roles(raw.get("roles")),
            iat=int(raw.get("iat")),
            exp=int(raw.get("exp")),
        )
    except (TypeError, ValueError):
        raise Unauthorized("Invalid identity token payload")


# === 密码 ===
# 中文注释: bcrypt 只取前 72 字节，超长密码在服务层直接拒绝，避免“截断后碰撞”。
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("ascii"))
    except ValueError:
        # 存储的哈希格式损坏
        return False
