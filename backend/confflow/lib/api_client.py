from typing import Any, Callable, Optional

from supabase import Client, create_client

from confflow.core.config import app_config


class _LazySupabaseClient:
    """
    延迟初始化 Supabase Client，避免在 import 时因为缺少环境变量导致整个模块导入失败。

    中文注释:
    - memory 模式（本地/测试）永远不会触发真实连接。
    - 真实运行时，如果缺少 URL/KEY，在第一次访问 client 时抛出清晰错误即可。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def _get(self) -> Client:
        if self._client is None:
            self._client = self._factory()
        return self._client

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get(), item)


def _create_supabase_admin() -> Client:
    if not app_config.supabase_url:
        raise RuntimeError("SUPABASE_URL is required")
    if not app_config.supabase_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY is required")
    return create_client(app_config.supabase_url, app_config.supabase_key)


# === 服务端 Supabase 客户端（service role，延迟初始化） ===
# 中文注释: 授权在本服务的 PermissionEngine 中完成，数据库侧不依赖 RLS。
supabase_admin: Client = _LazySupabaseClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
