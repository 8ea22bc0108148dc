"""Data models for mappings, sync items and the other record collections."""

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

SOURCE_SERVICE = "spotify"
DESTINATION_SERVICE = "youtube"

MAPPINGS = "mappings"
SYNC_ITEMS = "sync_items"
BLACKLIST = "blacklist"
ACTIVITY_LOGS = "activity_logs"
OAUTH_TOKENS = "oauth_tokens"
SETTINGS = "settings"

ADD_TRACK = "add_track"
REMOVE_TRACK = "remove_track"
RENAME_PLAYLIST = "rename_playlist"
ACTIONS = (ADD_TRACK, REMOVE_TRACK, RENAME_PLAYLIST)

PENDING = "pending"
RUNNING = "running"
DONE = "done"
ERROR = "error"
SKIPPED = "skipped"
STATUSES = (PENDING, RUNNING, DONE, ERROR, SKIPPED)
ACTIVE_STATUSES = (PENDING, RUNNING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: Any) -> datetime | None:
    """Parse a stored timestamp. Empty or unparseable values give None."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _known(cls, record: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in record.items() if k in names}


@dataclass
class Track:
    """A track as listed by either service."""
    id: str
    title: str
    artist: str = ""
    album: str = ""
    item_id: str = ""  # YouTube playlist item ID, needed for removal

    @property
    def label(self) -> str:
        return f"{self.title} by {self.artist}" if self.artist else self.title


@dataclass
class TrackRef:
    """Reference to a track inside a playlist, as passed to add/remove calls."""
    id: str
    item_id: str = ""


@dataclass
class Playlist:
    id: str
    name: str
    track_count: int = 0


@dataclass
class Mapping:
    id: str
    source_playlist_id: str
    destination_playlist_id: str
    source_playlist_name: str = ""
    destination_playlist_name: str = ""
    sync_name: bool = True
    sync_tracks: bool = True
    interval_minutes: int = 60
    last_analyzed_at: datetime | None = None
    next_analysis_at: datetime | None = None
    created: str = ""
    updated: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "Mapping":
        data = _known(cls, record)
        data["last_analyzed_at"] = parse_iso(data.get("last_analyzed_at"))
        data["next_analysis_at"] = parse_iso(data.get("next_analysis_at"))
        data["interval_minutes"] = int(data.get("interval_minutes") or 0)
        return cls(**data)

    def playlist_for(self, service: str) -> str:
        if service == SOURCE_SERVICE:
            return self.source_playlist_id
        if service == DESTINATION_SERVICE:
            return self.destination_playlist_id
        raise ValueError(f"Unknown service: {service}")

    def is_due(self, now: datetime) -> bool:
        if self.last_analyzed_at is None:
            return True
        elapsed = (now - self.last_analyzed_at).total_seconds()
        return elapsed >= self.interval_minutes * 60


@dataclass
class SyncItem:
    id: str
    mapping_id: str
    service: str
    action: str
    status: str = PENDING
    source_track_id: str = ""
    source_track_title: str = ""
    source_service: str = ""
    destination_service: str = ""
    payload: str = "{}"
    attempts: int = 0
    last_error: str = ""
    next_attempt_at: datetime | None = None
    created: str = ""
    updated: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "SyncItem":
        data = _known(cls, record)
        data["next_attempt_at"] = parse_iso(data.get("next_attempt_at"))
        data["attempts"] = int(data.get("attempts") or 0)
        return cls(**data)

    @property
    def data(self) -> dict:
        """Decoded payload."""
        try:
            decoded = json.loads(self.payload or "{}")
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}

    @property
    def track_id(self) -> str:
        """Identity used for de-duplication and blacklisting."""
        if self.action == REMOVE_TRACK:
            return self.data.get("video_id", "") or self.source_track_id
        return self.source_track_id


@dataclass
class BlacklistEntry:
    id: str
    mapping_id: str
    service: str
    track_id: str
    reason: str = ""
    skip_counter: int = 0
    last_skipped_at: datetime | None = None
    created: str = ""
    updated: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "BlacklistEntry":
        data = _known(cls, record)
        data["last_skipped_at"] = parse_iso(data.get("last_skipped_at"))
        data["skip_counter"] = int(data.get("skip_counter") or 0)
        return cls(**data)


@dataclass
class OAuthToken:
    provider: str
    access_token: str = ""
    refresh_token: str = ""
    expiry: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    id: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "OAuthToken":
        data = _known(cls, record)
        data["expiry"] = parse_iso(data.get("expiry"))
        scopes = data.get("scopes") or []
        data["scopes"] = scopes.split() if isinstance(scopes, str) else list(scopes)
        return cls(**data)

    def expires_within(self, seconds: float, now: datetime) -> bool:
        if not self.access_token or self.expiry is None:
            return True
        return (self.expiry - now).total_seconds() < seconds


@dataclass
class ActivityLog:
    level: str
    message: str
    job_type: str
    sync_item_id: str = ""
    id: str = ""
    created: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "ActivityLog":
        return cls(**_known(cls, record))


@dataclass
class AnalysisResult:
    """Result of one analysis tick."""
    mappings_analyzed: int = 0
    items_enqueued: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class ExecutionResult:
    """Result of one executor tick."""
    processed: int = 0
    done: int = 0
    retried: int = 0
    errored: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors
