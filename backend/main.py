import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

logger = logging.getLogger("confflow")

_SENTRY_ENABLED = False
try:
    from confflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则，Sentry 任何异常不得阻塞启动
    logger.warning(f"[sentry] init failed (ignored): {e}")

from confflow.api.v1 import admin_users, auth, editor, manuscripts, reviewer
from confflow.core.errors import DomainError
from confflow.core.middleware import ExceptionHandlerMiddleware, domain_error_handler

app = FastAPI(
    title="ConfFlow API",
    description="Conference manuscript lifecycle backend",
    version="1.0.0",
)

if _SENTRY_ENABLED:
    try:
        from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

        app.add_middleware(SentryAsgiMiddleware)
    except Exception as e:
        logger.warning(f"[sentry] middleware attach failed (ignored): {e}")


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins。

    中文注释:
    - 本地默认: http://localhost:3000
    - 生产/预发: 通过 FRONTEND_ORIGIN 或 FRONTEND_ORIGINS 注入（逗号分隔）
    """
    origins: list[str] = []

    single = (os.environ.get("FRONTEND_ORIGIN") or "").strip()
    if single:
        origins.append(single.rstrip("/"))

    many = (os.environ.get("FRONTEND_ORIGINS") or "").strip()
    if many:
        for part in many.split(","):
            o = (part or "").strip().rstrip("/")
            if o:
                origins.append(o)

    if not origins:
        origins = ["http://localhost:3000"]

    # 去重保持顺序
    return list(dict.fromkeys(origins))


# === 中间件配置 ===
# 1. 跨域资源共享 (CORS) - 允许前端访问
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 2. 请求日志 + 未预期异常兜底
app.add_middleware(ExceptionHandlerMiddleware)

# 3. 领域错误 -> {"detail", "type", ...}
app.add_exception_handler(DomainError, domain_error_handler)

# === 路由注册 ===
app.include_router(auth.router, prefix="/api/v1")
app.include_router(manuscripts.router, prefix="/api/v1")
app.include_router(editor.router, prefix="/api/v1")
app.include_router(reviewer.router, prefix="/api/v1")
app.include_router(admin_users.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "ConfFlow API is running", "docs": "/docs"}
