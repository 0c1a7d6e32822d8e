"""
Share Manager - lifecycle operations for shared items.

Creation, access, explicit deletion, owner listings and claims, all against
one process-wide Database handle.
"""
import asyncio
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from access_control import AccessDecision, AccessResult, access_item, load_record
from blob_store import LocalBlobStore
from cleanup import SweepReport, sweep
from database import Database
from errors import InvalidShareError, TransientError
from item_record import ItemKind, ItemRecord, ensure_utc, format_ts, parse_ts, utcnow
from models import ItemSummary
from ownership import ClaimResult, can_delete, claim_items
from security import (
    SecretHasher,
    log_security_event,
    sanitize_filename,
    sanitize_input,
    validate_content_type,
    validate_file_extension,
)
from utils.code_generator import MAX_ID_ATTEMPTS, generate_id, is_valid_id

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 1_000_000
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(50 * 1024 * 1024)))  # 50MB
DEFAULT_EXPIRY_MINUTES = int(os.getenv("DEFAULT_EXPIRY_MINUTES", "10"))
MAX_DISPLAY_NAME_LENGTH = 100
MAX_SECRET_LENGTH = 1024
# SQLite INTEGER is signed 64-bit
MAX_VIEWS_LIMIT = 2 ** 63 - 1
# Blob of an item finalized by its last view stays downloadable this long
DOWNLOAD_WINDOW_SECONDS = int(os.getenv("DOWNLOAD_WINDOW_SECONDS", "60"))


class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FileUpload:
    """File bytes as received, before they are stored."""
    data: bytes
    filename: str
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class CreatedItem:
    id: str
    expires_at: datetime


class ShareManager:
    """Entry point for every operation on shared items."""

    def __init__(
        self,
        db: Database,
        blobs: LocalBlobStore,
        hasher: Optional[SecretHasher] = None,
        max_file_size: int = MAX_FILE_SIZE,
        default_expiry_minutes: int = DEFAULT_EXPIRY_MINUTES,
        download_window_seconds: int = DOWNLOAD_WINDOW_SECONDS,
    ):
        self.db = db
        self.blobs = blobs
        self.hasher = hasher or SecretHasher()
        self.max_file_size = max_file_size
        self.default_expiry_minutes = default_expiry_minutes
        self.download_window_seconds = download_window_seconds

    # ============ CREATION ============

    def _validate(
        self,
        kind: str,
        content: Optional[str],
        upload: Optional[FileUpload],
        expires_at: Optional[datetime],
        max_views: Optional[int],
        display_name: Optional[str],
        secret: Optional[str],
        now: datetime,
    ) -> ItemKind:
        try:
            item_kind = ItemKind(kind)
        except ValueError:
            raise InvalidShareError('Invalid type. Must be either "text" or "file"')

        if item_kind is ItemKind.TEXT:
            if not content or not isinstance(content, str):
                raise InvalidShareError("Content is required for text uploads")
            if len(content) > MAX_TEXT_LENGTH:
                raise InvalidShareError(
                    f"Text content exceeds maximum length of {MAX_TEXT_LENGTH} characters"
                )
        else:
            if upload is None:
                raise InvalidShareError("File is required for file uploads")
            if len(upload.data) > self.max_file_size:
                raise InvalidShareError(
                    f"File size exceeds maximum of {self.max_file_size // (1024 * 1024)}MB"
                )
            if not validate_file_extension(sanitize_filename(upload.filename)):
                log_security_event("blocked_file_type", {"filename": upload.filename})
                raise InvalidShareError("File type not allowed")
            if not validate_content_type(upload.content_type):
                log_security_event("blocked_content_type", {"content_type": upload.content_type})
                raise InvalidShareError("File type not allowed")

        if expires_at is not None:
            try:
                expiry = ensure_utc(expires_at)
            except OverflowError:
                raise InvalidShareError("Expiry date is out of range")
            if expiry <= now:
                raise InvalidShareError("Expiry date must be in the future")

        if max_views is not None and (
            isinstance(max_views, bool)
            or not isinstance(max_views, int)
            or not 1 <= max_views <= MAX_VIEWS_LIMIT
        ):
            raise InvalidShareError("Max views must be a positive number")

        if display_name and len(display_name) > MAX_DISPLAY_NAME_LENGTH:
            raise InvalidShareError(
                f"Link name exceeds maximum length of {MAX_DISPLAY_NAME_LENGTH} characters"
            )

        if secret and len(secret) > MAX_SECRET_LENGTH:
            raise InvalidShareError(
                f"Password exceeds maximum length of {MAX_SECRET_LENGTH} characters"
            )

        return item_kind

    async def create_item(
        self,
        kind: str,
        content: Optional[str] = None,
        upload: Optional[FileUpload] = None,
        secret: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        max_views: Optional[int] = None,
        is_one_time: bool = False,
        owner_id: Optional[str] = None,
        display_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreatedItem:
        """
        Store a new item and return its identifier.

        Raises InvalidShareError before anything is written, and
        TransientError on storage failure.
        """
        now = ensure_utc(now or utcnow())
        item_kind = self._validate(
            kind, content, upload, expires_at, max_views, display_name, secret, now
        )

        expiry = (
            ensure_utc(expires_at) if expires_at is not None
            else now + timedelta(minutes=self.default_expiry_minutes)
        )
        digest = None
        if secret:
            try:
                digest = await asyncio.to_thread(self.hasher.hash, secret)
            except ValueError as e:
                # passlib rejects secrets it cannot hash, e.g. PasswordSizeError
                raise InvalidShareError(f"Password not accepted: {e}")
        label = sanitize_input(display_name, max_length=MAX_DISPLAY_NAME_LENGTH) or None

        locator = file_name = file_type = None
        file_size = None
        if item_kind is ItemKind.FILE:
            # Blob must be durable before the record points at it
            locator = await self.blobs.put(upload.data)
            file_name = sanitize_filename(upload.filename)
            file_size = len(upload.data)
            file_type = upload.content_type

        try:
            item_id = await self._insert(
                item_kind, content if item_kind is ItemKind.TEXT else None,
                locator, file_name, file_size, file_type, digest,
                expiry, max_views, is_one_time, owner_id, label, now,
            )
        except Exception:
            if locator:
                try:
                    await self.blobs.delete(locator)
                except TransientError as e:
                    logger.error(f"Could not remove blob {locator} after failed create: {e}")
            raise

        logger.info(f"Created {item_kind.value} item {item_id} expiring {format_ts(expiry)}")
        return CreatedItem(id=item_id, expires_at=expiry)

    async def _insert(
        self, kind, content, locator, file_name, file_size, file_type, digest,
        expires_at, max_views, is_one_time, owner_id, display_name, now,
    ) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            item_id = generate_id()
            try:
                await self.db.execute(
                    """
                    INSERT INTO items (
                        id, kind, content, blob_locator, file_name, file_size, file_type,
                        secret_digest, expires_at, max_views, is_one_time, owner_id,
                        display_name, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item_id, kind.value, content, locator, file_name, file_size, file_type,
                        digest, format_ts(expires_at), max_views, int(bool(is_one_time)),
                        owner_id, display_name, format_ts(now),
                    )
                )
                return item_id
            except sqlite3.IntegrityError:
                logger.warning(f"Identifier collision on {item_id}, retrying")
        raise TransientError(f"Failed to generate unique id after {MAX_ID_ATTEMPTS} attempts")

    # ============ ACCESS ============

    async def access_item(
        self,
        item_id: str,
        secret: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccessResult:
        if not is_valid_id(item_id):
            return AccessResult(AccessDecision.NOT_FOUND)
        return await access_item(
            self.db, item_id, now or utcnow(), secret, self.hasher.verify
        )

    # ============ DELETION ============

    async def delete_item(self, item_id: str, requester: Optional[str] = None,
                          now: Optional[datetime] = None) -> DeleteOutcome:
        """
        Explicitly delete a live item on behalf of `requester`.

        The soft delete is written first; blob removal afterwards is
        best-effort and never changes the outcome.
        """
        now = ensure_utc(now or utcnow())
        record = await load_record(self.db, item_id)
        if record is None or record.is_deleted:
            return DeleteOutcome.NOT_FOUND
        if not can_delete(record, requester):
            log_security_event("forbidden_delete", {"id": item_id[:3] + "***"})
            return DeleteOutcome.FORBIDDEN

        # Owner is re-checked on write in case a claim landed in between
        changed = await self.db.execute(
            """
            UPDATE items SET deleted_at = ?
            WHERE id = ? AND deleted_at IS NULL
              AND (owner_id IS NULL OR owner_id = ?)
            """,
            (format_ts(now), item_id, requester)
        )
        if not changed:
            latest = await load_record(self.db, item_id)
            if latest is None or latest.is_deleted:
                return DeleteOutcome.NOT_FOUND
            return DeleteOutcome.FORBIDDEN

        if record.file is not None:
            try:
                await self.blobs.delete(record.file.locator)
            except TransientError as e:
                logger.error(f"Could not delete blob for item {item_id}: {e}")
            else:
                try:
                    await self.db.execute(
                        "UPDATE items SET blob_purged_at = ? WHERE id = ?",
                        (format_ts(now), item_id)
                    )
                except TransientError as e:
                    # Left for purge_blobs; the delete itself already happened
                    logger.error(f"Could not mark blob purged for item {item_id}: {e}")

        logger.info(f"Item {item_id} deleted on request")
        return DeleteOutcome.DELETED

    # ============ OWNERSHIP ============

    async def list_items(self, owner_id: str) -> List[ItemSummary]:
        """Live items of `owner_id`, newest first."""
        rows = await self.db.fetchall(
            """
            SELECT * FROM items
            WHERE owner_id = ? AND deleted_at IS NULL
            ORDER BY created_at DESC
            """,
            (owner_id,)
        )
        return [
            ItemSummary(
                unique_id=row["id"],
                type=row["kind"],
                content=row["content"] if row["kind"] == ItemKind.TEXT.value else None,
                file_name=row["file_name"],
                file_size=row["file_size"],
                file_type=row["file_type"],
                expires_at=parse_ts(row["expires_at"]),
                max_views=row["max_views"],
                is_one_time=bool(row["is_one_time"]),
                has_password=row["secret_digest"] is not None,
                view_count=row["view_count"],
                download_count=row["download_count"],
                created_at=parse_ts(row["created_at"]),
                link_name=row["display_name"],
            )
            for row in rows
        ]

    async def claim_items(self, item_ids: Iterable[str], owner_id: str) -> ClaimResult:
        return await claim_items(
            self.db, [i for i in item_ids if is_valid_id(i)], owner_id
        )

    # ============ LIFECYCLE ============

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return await sweep(self.db, self.blobs, now)

    # ============ DOWNLOADS ============

    async def resolve_blob(self, locator: str, now: Optional[datetime] = None) -> Optional[Path]:
        """
        Path of a file payload the caller may still download, or None.

        Live, unexpired items are downloadable. An item finalized by its last
        view stays downloadable for `download_window_seconds` so that view
        can fetch the bytes; every other terminal item is refused.
        """
        now = ensure_utc(now or utcnow())
        try:
            path = self.blobs.path_for(locator)
        except ValueError:
            log_security_event("blob_path_traversal", {"locator": locator})
            return None

        row = await self.db.fetchone(
            "SELECT * FROM items WHERE kind = 'file' AND blob_locator = ?", (locator,)
        )
        if row is None:
            return None
        record = ItemRecord.from_row(row)

        if record.is_deleted:
            if not record.quota_met():
                return None
            if now - record.deleted_at > timedelta(seconds=self.download_window_seconds):
                return None
        elif record.is_expired(now):
            return None

        return path if path.is_file() else None
