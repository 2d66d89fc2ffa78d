from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from confflow.core.config import AppConfig
from confflow.core.errors import Forbidden, NotFound, Unauthorized, ValidationFailed
from confflow.core.role_matrix import Action, require_action
from confflow.core.security import MAX_PASSWORD_BYTES, create_identity_token, hash_password, verify_password
from confflow.models.user import Role, User, normalize_role
from confflow.repositories.base import ManuscriptRepository
from confflow.schemas.token import IdentityClaims
from confflow.services.lifecycle_service import EMAIL_PATTERN

logger = logging.getLogger("confflow.users")


class UserService:
    """
    用户注册 + 角色/启用状态管理。

    中文注释:
    - 用户从不删除，只停用/启用。
    - 角色变更不影响已签发的令牌（无吊销列表），重新签发后生效。
    """

    def __init__(
        self,
        repository: ManuscriptRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self, user_id: str) -> User:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def register_user(
        self,
        email: str,
        display_name: str,
        roles: Optional[Iterable[Role]] = None,
        password: Optional[str] = None,
    ) -> User:
        """
        注册新用户（默认角色 {author}）。roles 参数仅供初始化脚本/测试使用，HTTP 注册接口不暴露。
        password 为空时账号无法通过密码登录（只用于种子数据）。
        """
        email_clean = (email or "").strip().lower()
        name_clean = (display_name or "").strip()
        bad: list[str] = []
        if not EMAIL_PATTERN.match(email_clean):
            bad.append("email")
        if not name_clean:
            bad.append("display_name")
        if password is not None and (len(password) < 8 or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES):
            bad.append("password")
        if bad:
            raise ValidationFailed(bad)

        now = self._clock()
        user = User(
            id=str(uuid.uuid4()),
            email=email_clean,
            display_name=name_clean,
            roles=set(roles) if roles else {Role.AUTHOR},
            is_active=True,
            password_hash=hash_password(password) if password is not None else None,
            created_at=now,
            updated_at=now,
        )
        created = self.repository.add_user(user)
        logger.info("[Users] registered %s", created.id)
        return created

    def get_user(self, user_id: str) -> User:
        return self._load(user_id)

    def set_roles(self, identity: IdentityClaims, user_id: str, roles: Iterable[object]) -> User:
        require_action(identity, Action.ASSIGN_ROLES)

        requested = list(roles or [])
        normalized: set[Role] = set()
        for raw in requested:
            role = normalize_role(raw)  # type: ignore[arg-type]
            if role is None:
                raise ValidationFailed(["roles"], f"Unknown role: {raw}")
            normalized.add(role)
        if not normalized:
            raise ValidationFailed(["roles"])

        target = self._load(user_id)
        admin_changed = (Role.ADMIN in normalized) != (Role.ADMIN in target.roles)
        if admin_changed and Role.ADMIN not in identity.roles:
            raise Forbidden("Only admins may grant or revoke the admin role")

        updated = self.repository.update_user(
            target.model_copy(update={"roles": normalized, "updated_at": self._clock()})
        )
        logger.info(
            "[Users] roles of %s set to %s by %s",
            user_id,
            ",".join(sorted(r.value for r in normalized)),
            identity.id,
        )
        return updated

    def set_active(self, identity: IdentityClaims, user_id: str, active: bool) -> User:
        require_action(identity, Action.MANAGE_USERS)
        if user_id == identity.id:
            raise ValidationFailed(["user_id"], "Cannot change your own account status")

        target = self._load(user_id)
        if target.is_active == active:
            return target
        updated = self.repository.update_user(
            target.model_copy(update={"is_active": active, "updated_at": self._clock()})
        )
        logger.info("[Users] %s %s by %s", user_id, "enabled" if active else "disabled", identity.id)
        return updated

    def issue_token(self, email: str) -> tuple[str, IdentityClaims]:
        """
        开发环境登录：按邮箱签发身份令牌（生产环境由外部身份系统负责登录）。
        """
        if not AppConfig.from_env().dev_login_enabled:
            raise Forbidden("Development login is disabled")
        user = self.repository.get_user_by_email(email)
        if user is None or not user.is_active:
            raise Unauthorized("Unknown or inactive user")
        return create_identity_token(user=user)

    def login(self, email: str, password: str) -> tuple[str, IdentityClaims]:
        """
        邮箱 + 密码登录，签发身份令牌。

        中文注释: 未知用户、停用账号、密码错误统一返回同一个 401，不泄露账号是否存在。
        """
        user = self.repository.get_user_by_email((email or "").strip().lower())
        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            logger.info("[Users] login rejected for %s", (email or "").strip().lower())
            raise Unauthorized("Invalid email or password")
        logger.info("[Users] login %s", user.id)
        return create_identity_token(user=user)
