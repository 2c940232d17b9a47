import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from app.core.config import app_config

url: str = app_config.supabase_url

# The reviewer-assignment core only ever writes with the service role; fall back to
# SUPABASE_KEY for local setups that only export one key.
service_role_key: str = app_config.supabase_key or os.environ.get("SUPABASE_KEY", "")


class _LazySupabaseClient:
    """
    延迟初始化 Supabase Client，避免在 import 时因为缺少环境变量导致整个模块导入失败。

    Notes:
    - unit tests inject their own client into the repositories, so this module must stay importable
      without SUPABASE_URL.
    - at runtime a missing URL/KEY raises a clear error on first attribute access.
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
    if not url:
        raise RuntimeError("SUPABASE_URL is required")
    if not service_role_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required")
    return create_client(url, service_role_key)


# === 管理端 Supabase 客户端（延迟初始化） ===
supabase_admin: Client = _LazySupabaseClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
