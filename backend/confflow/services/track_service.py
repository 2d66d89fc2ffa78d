from __future__ import annotations

from typing import Any, Optional, Protocol

from pydantic import BaseModel

from confflow.core.config import AppConfig, get_configured_tracks


class Track(BaseModel):
    id: str
    name: str
    conference_year: Optional[int] = None


class TrackLookup(Protocol):
    def get_track(self, track_id: str) -> Optional[Track]: ...


class StaticTrackLookup:
    """
    基于环境变量 CONFFLOW_TRACKS 的 Track 列表。

    中文注释: 未配置任何 track 时不做校验（任意 track_id 都视为有效）。
    """

    def __init__(self, tracks: Optional[dict[str, str]] = None) -> None:
        self.tracks = dict(tracks if tracks is not None else get_configured_tracks())

    def get_track(self, track_id: str) -> Optional[Track]:
        if not self.tracks:
            return Track(id=track_id, name=track_id)
        name = self.tracks.get(track_id)
        if name is None:
            return None
        return Track(id=track_id, name=name)


class SupabaseTrackLookup:
    def __init__(self, client: Any = None) -> None:
        if client is None:
            from confflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    def get_track(self, track_id: str) -> Optional[Track]:
        resp = (
            self.client.table("tracks")
            .select("id,name,conference_year")
            .eq("id", track_id)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return Track.model_validate(rows[0]) if rows else None


_lookup: Optional[TrackLookup] = None


def get_track_lookup() -> TrackLookup:
    global _lookup
    if _lookup is None:
        cfg = AppConfig.from_env()
        _lookup = SupabaseTrackLookup() if cfg.repository_backend == "supabase" else StaticTrackLookup()
    return _lookup


def set_track_lookup(lookup: Optional[TrackLookup]) -> None:
    global _lookup
    _lookup = lookup
