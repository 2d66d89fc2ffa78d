from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from postgrest.exceptions import APIError

from confflow.core.config import AppConfig
from confflow.models.notification import LifecycleEvent

logger = logging.getLogger("confflow.notifications")


class NotificationDispatcher(Protocol):
    """
    通知发送边界：核心只产生 LifecycleEvent，投递方式由实现决定。
    """

    def notify(self, event: LifecycleEvent) -> None: ...


class LoggingDispatcher:
    """只写日志（本地开发 / 未配置通知渠道时使用）"""

    def notify(self, event: LifecycleEvent) -> None:
        logger.info(
            "[Notify] %s manuscript=%s actor=%s recipients=%s",
            event.type.value,
            event.manuscript_id,
            event.actor_id,
            ",".join(event.recipients) or "-",
        )


class SupabaseNotificationDispatcher:
    """
    写入 notifications 表（每个接收人一行）。

    中文注释:
    - 使用 supabase_admin（service_role）写入，站内信由前端读取展示。
    - 邮件渲染/发送不在本服务内。
    """

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from confflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    def notify(self, event: LifecycleEvent) -> None:
        rows = [
            {
                "user_id": user_id,
                "manuscript_id": event.manuscript_id,
                "type": event.type.value,
                "payload": {**event.payload, "actor_id": event.actor_id},
                "is_read": False,
                "created_at": event.occurred_at.isoformat(),
            }
            for user_id in dict.fromkeys(event.recipients)
            if user_id
        ]
        if not rows:
            return
        self.client.table("notifications").insert(rows).execute()


def publish(dispatcher: Optional[NotificationDispatcher], event: LifecycleEvent) -> bool:
    """
    尽力投递：状态已提交，通知失败只记录日志，不回滚、不向调用方抛出。
    """
    if dispatcher is None:
        return False
    try:
        dispatcher.notify(event)
        return True
    except APIError as e:
        logger.warning("notification insert failed for %s (ignored): %s", event.type.value, e)
    except Exception as e:
        logger.error("notification dispatch failed for %s (ignored): %s", event.type.value, e, exc_info=True)
    return False


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        cfg = AppConfig.from_env()
        if cfg.repository_backend == "supabase":
            _dispatcher = SupabaseNotificationDispatcher()
        else:
            _dispatcher = LoggingDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher
