from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from confflow.core.config import AppConfig


def _normalize_signed_url(resp: object) -> str | None:
    if not isinstance(resp, dict):
        return None
    return str(resp.get("signedUrl") or resp.get("signedURL") or "") or None


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires_in: int


class FileStore(Protocol):
    """文件存储边界：put_file / get_file_url / delete_file"""

    def put_file(self, *, path: str, content: bytes, content_type: str) -> None: ...

    def get_file_url(self, *, path: str, expires_in: int = 600) -> SignedUrl: ...

    def delete_file(self, *, path: str) -> None: ...


class SupabaseFileStore:
    """
    Supabase Storage 实现（私有 bucket + 签名 URL）。
    """

    def __init__(self, bucket: str, client=None) -> None:
        if client is None:
            from confflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.bucket = bucket
        self.client = client
        self._bucket_checked = False

    def ensure_bucket_exists(self) -> None:
        """
        确保 bucket 存在（开发/演示环境兜底；正式环境建议用 migration 创建）。
        """
        if self._bucket_checked:
            return
        storage = self.client.storage
        try:
            storage.get_bucket(self.bucket)
        except Exception:
            try:
                storage.create_bucket(self.bucket, options={"public": False})
            except Exception as e:
                text = str(e).lower()
                if not ("already" in text or "exists" in text or "duplicate" in text):
                    raise
        self._bucket_checked = True

    def put_file(self, *, path: str, content: bytes, content_type: str) -> None:
        self.ensure_bucket_exists()
        # storage3 期望 header value 为字符串
        opts = {"content-type": content_type, "upsert": "true"}
        self.client.storage.from_(self.bucket).upload(path, content, opts)

    def get_file_url(self, *, path: str, expires_in: int = 600) -> SignedUrl:
        signed = self.client.storage.from_(self.bucket).create_signed_url(path, expires_in)
        url = _normalize_signed_url(signed)
        if not url:
            raise RuntimeError("Failed to create signed url")
        return SignedUrl(url=url, expires_in=expires_in)

    def delete_file(self, *, path: str) -> None:
        self.client.storage.from_(self.bucket).remove([path])


class InMemoryFileStore:
    """进程内文件存储（本地开发 / 测试）"""

    def __init__(self, base_url: str = "memory://files") -> None:
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self.files: dict[str, tuple[bytes, str]] = {}

    def put_file(self, *, path: str, content: bytes, content_type: str) -> None:
        with self._lock:
            self.files[path] = (bytes(content), content_type)

    def get_file_url(self, *, path: str, expires_in: int = 600) -> SignedUrl:
        with self._lock:
            if path not in self.files:
                raise KeyError(path)
        return SignedUrl(url=f"{self.base_url}/{path}?expires_in={expires_in}", expires_in=expires_in)

    def delete_file(self, *, path: str) -> None:
        with self._lock:
            self.files.pop(path, None)


_file_store: Optional[FileStore] = None


def get_file_store() -> FileStore:
    global _file_store
    if _file_store is None:
        cfg = AppConfig.from_env()
        if cfg.repository_backend == "supabase":
            _file_store = SupabaseFileStore(cfg.files_bucket)
        else:
            _file_store = InMemoryFileStore()
    return _file_store


def set_file_store(store: Optional[FileStore]) -> None:
    global _file_store
    _file_store = store
