"""
Persisted representation of one shared item.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ItemKind(str, Enum):
    TEXT = "text"
    FILE = "file"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    # Fixed-width ISO strings so SQL string comparison is chronological
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class FilePayload:
    """Blob locator plus the metadata captured at upload time."""
    locator: str
    name: str
    size: int
    content_type: str


@dataclass(frozen=True)
class ItemRecord:
    """Snapshot of one row of the items table."""
    id: str
    kind: ItemKind
    expires_at: datetime
    created_at: datetime
    content: Optional[str] = None
    file: Optional[FilePayload] = None
    secret_digest: Optional[str] = None
    max_views: Optional[int] = None
    view_count: int = 0
    download_count: int = 0
    is_one_time: bool = False
    owner_id: Optional[str] = None
    display_name: Optional[str] = None
    deleted_at: Optional[datetime] = None
    blob_purged_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def requires_secret(self) -> bool:
        return self.secret_digest is not None

    @property
    def effective_quota(self) -> Optional[int]:
        """View limit actually enforced; one-time items always allow one view."""
        if self.is_one_time:
            return 1
        return self.max_views

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) >= self.expires_at

    def quota_met(self, view_count: Optional[int] = None) -> bool:
        quota = self.effective_quota
        if quota is None:
            return False
        count = self.view_count if view_count is None else view_count
        return count >= quota

    @classmethod
    def from_row(cls, row) -> "ItemRecord":
        kind = ItemKind(row["kind"])
        file = None
        if kind is ItemKind.FILE:
            file = FilePayload(
                locator=row["blob_locator"],
                name=row["file_name"],
                size=row["file_size"],
                content_type=row["file_type"],
            )
        return cls(
            id=row["id"],
            kind=kind,
            expires_at=parse_ts(row["expires_at"]),
            created_at=parse_ts(row["created_at"]),
            content=row["content"],
            file=file,
            secret_digest=row["secret_digest"],
            max_views=row["max_views"],
            view_count=row["view_count"],
            download_count=row["download_count"],
            is_one_time=bool(row["is_one_time"]),
            owner_id=row["owner_id"],
            display_name=row["display_name"],
            deleted_at=parse_ts(row["deleted_at"]),
            blob_purged_at=parse_ts(row["blob_purged_at"]),
        )
