from fastapi import APIRouter, Depends

from confflow.api.v1.common import get_user_service, ok
from confflow.core.auth_utils import get_current_identity
from confflow.models.schemas import RoleUpdateRequest, UserStatusUpdateRequest
from confflow.schemas.token import IdentityClaims
from confflow.services.user_service import UserService

router = APIRouter(prefix="/admin/users", tags=["Admin Users"])


@router.put("/{user_id}/roles")
async def update_roles(
    user_id: str,
    payload: RoleUpdateRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    users: UserService = Depends(get_user_service),
):
    """
    覆盖式设置角色（assign_roles；仅 admin 可授予/撤销 admin）。
    """
    return ok(users.set_roles(identity, user_id, payload.roles))


@router.patch("/{user_id}/status")
async def update_status(
    user_id: str,
    payload: UserStatusUpdateRequest,
    identity: IdentityClaims = Depends(get_current_identity),
    users: UserService = Depends(get_user_service),
):
    return ok(users.set_active(identity, user_id, payload.action == "enable"))
