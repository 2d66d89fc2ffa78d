from fastapi import APIRouter, Depends

from confflow.api.v1.common import get_user_service, ok
from confflow.core.auth_utils import get_current_identity
from confflow.core.role_matrix import list_capabilities
from confflow.models.schemas import DevTokenRequest, LoginRequest, RegisterRequest
from confflow.schemas.token import IdentityClaims, TokenResponse, TokenResponseData
from confflow.services.user_service import UserService

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/register", status_code=201)
async def register(payload: RegisterRequest, users: UserService = Depends(get_user_service)):
    """
    注册新用户（默认角色 author）。
    """
    user = users.register_user(payload.email, payload.display_name, password=payload.password)
    return ok(user)


@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest, users: UserService = Depends(get_user_service)):
    """
    邮箱 + 密码登录，返回身份令牌。
    """
    token, claims = users.login(payload.email, payload.password)
    return TokenResponse(data=TokenResponseData(access_token=token, expires_at=claims.exp))


@router.get("/me")
async def me(identity: IdentityClaims = Depends(get_current_identity)):
    """
    当前身份 + 能力列表（能力按令牌中的角色快照计算）。
    """
    caps = sorted(c.value for c in list_capabilities(identity.roles))
    return ok(
        {
            "id": identity.id,
            "email": identity.email,
            "display_name": identity.display_name,
            "roles": sorted(r.value for r in identity.roles),
            "capabilities": caps,
            "expires_at": identity.exp,
        }
    )


@router.post("/dev-token", response_model=TokenResponse)
async def dev_token(payload: DevTokenRequest, users: UserService = Depends(get_user_service)):
    """
    开发环境登录（仅 CONFFLOW_DEV_LOGIN=1 且使用 memory 仓储时可用）。
    """
    token, claims = users.issue_token(payload.email)
    return TokenResponse(data=TokenResponseData(access_token=token, expires_at=claims.exp))
