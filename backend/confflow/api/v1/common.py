from __future__ import annotations

from fastapi import Depends

from confflow.repositories.base import ManuscriptRepository
from confflow.repositories.factory import get_repository
from confflow.services.assignment_service import AssignmentService
from confflow.services.decision_service import DecisionService
from confflow.services.manuscript_service import ManuscriptService
from confflow.services.notification_service import get_dispatcher
from confflow.services.storage_service import get_file_store
from confflow.services.track_service import get_track_lookup
from confflow.services.user_service import UserService

# 中文注释:
# - 路由层只做“鉴权依赖 + 参数解析 + 响应封装”，业务规则全部在 services 中。
# - 服务对象按请求构造（无状态），仓储/边界实现为进程级单例，测试中可替换。


def ok(data) -> dict:
    return {"success": True, "data": data}


def get_manuscript_service(repo: ManuscriptRepository = Depends(get_repository)) -> ManuscriptService:
    return ManuscriptService(
        repo,
        file_store=get_file_store(),
        dispatcher=get_dispatcher(),
        track_lookup=get_track_lookup(),
    )


def get_assignment_service(repo: ManuscriptRepository = Depends(get_repository)) -> AssignmentService:
    return AssignmentService(repo, dispatcher=get_dispatcher())


def get_decision_service(repo: ManuscriptRepository = Depends(get_repository)) -> DecisionService:
    return DecisionService(repo, dispatcher=get_dispatcher())


def get_user_service(repo: ManuscriptRepository = Depends(get_repository)) -> UserService:
    return UserService(repo)
