import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config

    中文注释:
    - repository_backend 决定持久化实现：memory（本地/测试）或 supabase（线上）。
    - 未配置 SUPABASE_URL 时一律回退 memory，保证本地可启动。
    - dev_login_enabled 仅在 CONFFLOW_DEV_LOGIN=1 且使用 memory 仓储时为 True。
    """

    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str
    repository_backend: str
    files_bucket: str
    dev_login_enabled: bool

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        backend = (os.environ.get("CONFFLOW_REPOSITORY") or "").strip().lower()
        if backend not in {"memory", "supabase"}:
            backend = "supabase" if supabase_url else "memory"

        files_bucket = (os.environ.get("CONFFLOW_FILES_BUCKET") or "manuscripts").strip()
        # 开发登录必须显式开启，且只允许 memory 仓储
        dev_login_enabled = _env_bool("CONFFLOW_DEV_LOGIN", False) and backend == "memory"

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            repository_backend=backend,
            files_bucket=files_bucket,
            dev_login_enabled=dev_login_enabled,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class SessionTokenConfig:
    """
    身份令牌（IdentityToken）签名配置

    中文注释:
    1) 令牌为无状态 JWT，服务端不保存 session，也没有吊销列表。
    2) 生产环境必须显式配置 SESSION_JWT_SECRET；本地可使用 SECRET_KEY 兜底。
    """

    secret: str
    algorithm: str
    issuer: str
    audience: str
    ttl_seconds: int

    @staticmethod
    def from_env() -> "SessionTokenConfig":
        secret = (
            os.environ.get("SESSION_JWT_SECRET")
            or os.environ.get("SECRET_KEY")
            or ""
        ).strip()
        ttl_seconds = _env_int("SESSION_TTL_SECONDS", 7 * 24 * 60 * 60)
        if ttl_seconds <= 0:
            ttl_seconds = 7 * 24 * 60 * 60

        return SessionTokenConfig(
            secret=secret,
            algorithm="HS256",
            issuer=(os.environ.get("SESSION_JWT_ISSUER") or "confflow").strip(),
            audience=(os.environ.get("SESSION_JWT_AUDIENCE") or "confflow-users").strip(),
            ttl_seconds=ttl_seconds,
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    Sentry 配置（可选）
    """

    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        enabled = _env_bool("SENTRY_ENABLED", dsn is not None)
        environment = (
            os.environ.get("SENTRY_ENVIRONMENT") or os.environ.get("APP_ENV") or "development"
        ).strip()

        rate_raw = (os.environ.get("SENTRY_TRACES_SAMPLE_RATE") or "0").strip()
        try:
            traces_sample_rate = float(rate_raw)
        except ValueError:
            traces_sample_rate = 0.0

        return SentryConfig(
            enabled=enabled,
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
        )


def get_configured_tracks() -> dict[str, str]:
    """
    本地 Track 列表（CONFFLOW_TRACKS="ai:Artificial Intelligence,sys:Systems"）。

    中文注释:
    - 仅在 memory 模式下使用；线上从 Supabase tracks 表读取。
    - 未配置时返回空字典，表示不校验 track。
    """

    raw = (os.environ.get("CONFFLOW_TRACKS") or "").strip()
    out: dict[str, str] = {}
    for part in raw.split(","):
        item = part.strip()
        if not item:
            continue
        key, _, name = item.partition(":")
        key = key.strip()
        if key:
            out[key] = (name or key).strip()
    return out
