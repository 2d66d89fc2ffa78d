from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from confflow.core.errors import Forbidden
from confflow.models.user import Role, normalize_role

if TYPE_CHECKING:
    from confflow.schemas.token import IdentityClaims

# 中文注释：
# - 这里集中定义“角色 -> 能力”与“动作 -> 授权条件”，避免权限逻辑散落在各路由/服务。
# - 多角色用户的权限为各角色能力集合的并集；角色之间没有继承关系。
# - 普通 editor 不持有 make_decision（以正式权限表为准，而不是某些页面的宽松展示）。


class Capability(str, Enum):
    CREATE_MANUSCRIPT = "create_manuscript"
    VIEW_OWN_SUBMISSIONS = "view_own_submissions"
    EDIT_SUBMISSION = "edit_submission"
    VIEW_ALL_SUBMISSIONS = "view_all_submissions"
    VIEW_ASSIGNED_REVIEWS = "view_assigned_reviews"
    SUBMIT_REVIEW = "submit_review"
    ASSIGN_REVIEWERS = "assign_reviewers"
    VIEW_ALL_REVIEWS = "view_all_reviews"
    MAKE_DECISION = "make_decision"
    VIEW_DECISIONS = "view_decisions"
    MANAGE_USERS = "manage_users"
    ASSIGN_ROLES = "assign_roles"


_EDITORIAL = {
    Capability.VIEW_ALL_SUBMISSIONS,
    Capability.VIEW_ALL_REVIEWS,
    Capability.ASSIGN_REVIEWERS,
    Capability.VIEW_DECISIONS,
}

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.AUTHOR: frozenset(
        {
            Capability.CREATE_MANUSCRIPT,
            Capability.VIEW_OWN_SUBMISSIONS,
            Capability.EDIT_SUBMISSION,
        }
    ),
    Role.REVIEWER: frozenset(
        {
            Capability.VIEW_ASSIGNED_REVIEWS,
            Capability.SUBMIT_REVIEW,
        }
    ),
    Role.EDITOR: frozenset(_EDITORIAL),
    Role.CHIEF_EDITOR: frozenset(
        _EDITORIAL | {Capability.MAKE_DECISION, Capability.ASSIGN_ROLES}
    ),
    Role.ADMIN: frozenset(
        _EDITORIAL
        | {
            Capability.MAKE_DECISION,
            Capability.MANAGE_USERS,
            Capability.ASSIGN_ROLES,
        }
    ),
}


class Action(str, Enum):
    CREATE_DRAFT = "manuscript:create_draft"
    EDIT_MANUSCRIPT = "manuscript:edit"
    SUBMIT_MANUSCRIPT = "manuscript:submit"
    RESUBMIT_MANUSCRIPT = "manuscript:resubmit"
    VIEW_MANUSCRIPT = "manuscript:view"
    VIEW_TRANSITIONS = "manuscript:view_transitions"
    ASSIGN_REVIEWERS = "review:assign"
    RESPOND_TO_ASSIGNMENT = "review:respond"
    SUBMIT_REVIEW = "review:submit"
    VIEW_ALL_REVIEWS = "review:view_all"
    RECORD_DECISION = "decision:record"
    VIEW_DECISIONS = "decision:view"
    MANAGE_USERS = "user:manage"
    ASSIGN_ROLES = "user:assign_roles"


class Scope(str, Enum):
    ANY = "any"
    OWNER = "owner"
    ASSIGNED_REVIEWER = "assigned_reviewer"


@dataclass(frozen=True)
class Grant:
    capability: Capability
    scope: Scope = Scope.ANY


# 动作 -> 可授权条件（满足任一即可）
ACTION_GRANTS: dict[Action, tuple[Grant, ...]] = {
    Action.CREATE_DRAFT: (Grant(Capability.CREATE_MANUSCRIPT),),
    Action.EDIT_MANUSCRIPT: (Grant(Capability.EDIT_SUBMISSION, Scope.OWNER),),
    Action.SUBMIT_MANUSCRIPT: (Grant(Capability.EDIT_SUBMISSION, Scope.OWNER),),
    Action.RESUBMIT_MANUSCRIPT: (Grant(Capability.EDIT_SUBMISSION, Scope.OWNER),),
    Action.VIEW_MANUSCRIPT: (
        Grant(Capability.VIEW_ALL_SUBMISSIONS),
        Grant(Capability.VIEW_OWN_SUBMISSIONS, Scope.OWNER),
        Grant(Capability.VIEW_ASSIGNED_REVIEWS, Scope.ASSIGNED_REVIEWER),
    ),
    Action.VIEW_TRANSITIONS: (Grant(Capability.VIEW_ALL_SUBMISSIONS),),
    Action.ASSIGN_REVIEWERS: (Grant(Capability.ASSIGN_REVIEWERS),),
    Action.RESPOND_TO_ASSIGNMENT: (
        Grant(Capability.VIEW_ASSIGNED_REVIEWS, Scope.ASSIGNED_REVIEWER),
    ),
    Action.SUBMIT_REVIEW: (Grant(Capability.SUBMIT_REVIEW, Scope.ASSIGNED_REVIEWER),),
    Action.VIEW_ALL_REVIEWS: (Grant(Capability.VIEW_ALL_REVIEWS),),
    Action.RECORD_DECISION: (Grant(Capability.MAKE_DECISION),),
    Action.VIEW_DECISIONS: (
        Grant(Capability.VIEW_DECISIONS),
        Grant(Capability.VIEW_OWN_SUBMISSIONS, Scope.OWNER),
    ),
    Action.MANAGE_USERS: (Grant(Capability.MANAGE_USERS),),
    Action.ASSIGN_ROLES: (Grant(Capability.ASSIGN_ROLES),),
}


@dataclass(frozen=True)
class ResourceScope:
    """
    授权时的资源视图（只包含所有权判定所需的 ID 集合）。
    """

    author_ids: frozenset[str] = field(default_factory=frozenset)
    reviewer_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def normalize_roles(roles: Iterable[object] | None) -> set[Role]:
    """
    将输入角色归一化（小写、去空、丢弃未知角色）。
    """
    out: set[Role] = set()
    for raw in roles or []:
        role = normalize_role(raw)  # type: ignore[arg-type]
        if role is not None:
            out.add(role)
    return out


def list_capabilities(roles: Iterable[object] | None) -> set[Capability]:
    """
    返回角色集合的能力并集（用于 /auth/me capability 输出）。
    """
    caps: set[Capability] = set()
    for role in normalize_roles(roles):
        caps.update(ROLE_CAPABILITIES.get(role) or frozenset())
    return caps


def _scope_satisfied(scope: Scope, user_id: str, resource: Optional[ResourceScope]) -> bool:
    if scope is Scope.ANY:
        return True
    if resource is None or not user_id:
        return False
    if scope is Scope.OWNER:
        return user_id in resource.author_ids
    if scope is Scope.ASSIGNED_REVIEWER:
        return user_id in resource.reviewer_ids
    return False


def authorize(
    *,
    user_id: str,
    roles: Iterable[object] | None,
    action: Action,
    resource: Optional[ResourceScope] = None,
) -> AuthorizationResult:
    """
    判定 (角色集合, 动作, 资源) 是否允许。

    中文注释：
    - 纯函数：无 I/O、无副作用；拒绝时不抛异常，返回带原因的结果。
    - 调用方负责把拒绝结果转换为 Forbidden。
    """
    grants = ACTION_GRANTS.get(action)
    if not grants:
        return AuthorizationResult(False, f"Unknown action: {action}")

    caps = list_capabilities(roles)
    missing_scope: Optional[Scope] = None
    for grant in grants:
        if grant.capability not in caps:
            continue
        if _scope_satisfied(grant.scope, user_id, resource):
            return AuthorizationResult(True, f"granted by {grant.capability.value}")
        missing_scope = grant.scope

    if missing_scope is Scope.OWNER:
        return AuthorizationResult(False, f"{action.value} requires ownership of the manuscript")
    if missing_scope is Scope.ASSIGNED_REVIEWER:
        return AuthorizationResult(False, f"{action.value} requires an assignment on the manuscript")
    needed = ", ".join(sorted({g.capability.value for g in grants}))
    return AuthorizationResult(False, f"Insufficient permission for action: {action.value} (needs {needed})")


def require_action(
    identity: "IdentityClaims",
    action: Action,
    resource: Optional[ResourceScope] = None,
) -> None:
    """
    服务层统一入口：拒绝时抛 Forbidden（403）。
    """
    result = authorize(user_id=identity.id, roles=identity.roles, action=action, resource=resource)
    if not result.allowed:
        raise Forbidden(result.reason)
