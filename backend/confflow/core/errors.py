from __future__ import annotations

from typing import Any, Iterable


class DomainError(Exception):
    """
    领域错误基类。

    中文注释:
    - kind 为稳定的错误类型（给调用方做分支），reason 为可读说明。
    - HTTP 层统一由 main.py 注册的 exception handler 转换为 {"detail", "type"}。
    """

    kind = "domain_error"
    status_code = 400

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.reason, "type": self.kind}


class Unauthorized(DomainError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(DomainError):
    kind = "forbidden"
    status_code = 403


class NotFound(DomainError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(DomainError):
    kind = "validation_failed"
    status_code = 422

    def __init__(self, fields: Iterable[str], reason: str | None = None) -> None:
        self.fields = [str(f) for f in fields]
        super().__init__(reason or f"Missing or invalid fields: {', '.join(self.fields)}")

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["fields"] = list(self.fields)
        return payload


class InvalidTransition(DomainError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current_status: str | None, event: str) -> None:
        self.current_status = current_status
        self.event = event
        super().__init__(f"Invalid transition: ({current_status or 'none'}, {event})")

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["current_status"] = self.current_status
        payload["event"] = self.event
        return payload


class AlreadyExists(DomainError):
    kind = "already_exists"
    status_code = 409


class AlreadySubmitted(DomainError):
    kind = "already_submitted"
    status_code = 409


class ConflictingWrite(DomainError):
    """并发写冲突：调用方应重新读取最新状态后重试。"""

    kind = "conflicting_write"
    status_code = 409
