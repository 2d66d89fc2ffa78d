import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from confflow.core.errors import DomainError

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("confflow")


def domain_error_response(exc: DomainError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """
    领域错误 -> HTTP 响应（由 main.py 注册为 exception handler）
    """
    if exc.status_code >= 409 or exc.status_code == 403:
        logger.info(
            f"Domain error: {exc.kind} Method: {request.method} Path: {request.url.path} Reason: {exc.reason}"
        )
    return domain_error_response(exc)


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件
    - 每个请求输出一行耗时日志
    - 未预期异常转换为 500，并记录堆栈
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                f"Method: {request.method} Path: {request.url.path} Status: {response.status_code} Time: {process_time:.4f}s"
            )
            return response
        except DomainError as exc:
            return domain_error_response(exc)
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"},
            )
        except Exception as e:
            logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error", "type": "server_error"},
            )
