import logging
import threading
from typing import Optional

from confflow.core.config import AppConfig
from confflow.repositories.base import ManuscriptRepository

logger = logging.getLogger("confflow.repository")

_lock = threading.Lock()
_repository: Optional[ManuscriptRepository] = None


def _build_repository() -> ManuscriptRepository:
    cfg = AppConfig.from_env()
    if cfg.repository_backend == "supabase":
        from confflow.repositories.supabase_repo import SupabaseRepository

        logger.info("using supabase repository")
        return SupabaseRepository()

    from confflow.repositories.memory import InMemoryRepository

    logger.info("using in-memory repository (env=%s)", cfg.env)
    return InMemoryRepository()


def get_repository() -> ManuscriptRepository:
    """
    进程级仓储单例（FastAPI 依赖注入入口）。
    """
    global _repository
    if _repository is None:
        with _lock:
            if _repository is None:
                _repository = _build_repository()
    return _repository


def set_repository(repository: Optional[ManuscriptRepository]) -> None:
    """测试用：替换或重置仓储。"""
    global _repository
    with _lock:
        _repository = repository
