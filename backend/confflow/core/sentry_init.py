from typing import Any

from confflow.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "token",
    "jwt",
    "authorization",
    "cookie",
    "set-cookie",
    "supabase_key",
    "service_role_key",
    "session_jwt_secret",
    "comment_to_editor",
}


def _looks_like_file_payload(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray)):
        return True
    if isinstance(value, str):
        # 超长文本（摘要/审稿意见/文件内容）不上报
        return len(value) > 5000
    return False


def _scrub(value: Any) -> Any:
    """
    递归去除敏感字段与稿件内容。

    中文注释: 审稿人的保密意见（comment_to_editor）同样视为敏感字段。
    """
    if _looks_like_file_payload(value):
        return "[Filtered]"

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).strip().lower() in _SENSITIVE_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    # 中文注释: 不上传请求体（稿件文件走 multipart），只保留诊断所需的信息。
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: v for k, v in headers.items() if str(k).strip().lower() not in _SENSITIVE_KEYS
            }
        for key in ("cookies", "data", "body"):
            if key in request:
                request[key] = "[Filtered]"
        event["request"] = request

    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)

    return event


def init_sentry() -> bool:
    """
    初始化 Sentry。

    零崩溃原则：
    - 未配置 DSN / 显式禁用时直接返回 False。
    - 初始化异常由调用方 try/except 处理，不得阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    options: dict[str, Any] = {
        "dsn": cfg.dsn,
        "environment": cfg.environment,
        "traces_sample_rate": cfg.traces_sample_rate,
        "integrations": [FastApiIntegration()],
        "send_default_pii": False,
        "before_send": _before_send,
        "max_request_body_size": "never",
    }
    try:
        sentry_sdk.init(**options)
    except Exception as exc:
        message = str(exc)
        # 旧版 sentry-sdk 不认识 max_request_body_size 时降级重试
        if "Unknown option" in message or "unexpected keyword argument" in message:
            options.pop("max_request_body_size", None)
            sentry_sdk.init(**options)
        else:
            raise
    return True
