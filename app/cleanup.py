"""
Background cleanup worker for expired shares.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from blob_store import LocalBlobStore
from database import Database
from errors import TransientError
from item_record import ensure_utc, format_ts, utcnow

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
# Exhausted file items keep their blob this long so the last download completes
BLOB_GRACE_SECONDS = int(os.getenv("BLOB_GRACE_SECONDS", "300"))


@dataclass
class SweepReport:
    processed: int = 0
    errors: List[str] = field(default_factory=list)


async def _delete_blob(blobs: LocalBlobStore, item_id: str, locator: Optional[str]) -> bool:
    """Best-effort blob removal. Failures are logged and reported, never raised."""
    if not locator:
        return True
    try:
        await blobs.delete(locator)
    except (TransientError, ValueError) as e:
        logger.error(f"Could not delete blob for item {item_id}: {e}")
        return False
    return True


async def sweep(db: Database, blobs: LocalBlobStore, now: Optional[datetime] = None) -> SweepReport:
    """
    Finalize items whose expiry has passed but which are still live.

    File blobs are removed first, best-effort; the record is soft-deleted
    whether or not that succeeded. Safe to run repeatedly.
    """
    stamp = format_ts(now or utcnow())
    report = SweepReport()

    expired = await db.fetchall(
        """
        SELECT id, kind, blob_locator FROM items
        WHERE expires_at < ? AND deleted_at IS NULL
        """,
        (stamp,)
    )

    for row in expired:
        blob_deleted = True
        if row["kind"] == "file":
            blob_deleted = await _delete_blob(blobs, row["id"], row["blob_locator"])
            if not blob_deleted:
                report.errors.append(row["id"])

        try:
            changed = await db.execute(
                """
                UPDATE items
                SET deleted_at = ?,
                    blob_purged_at = CASE WHEN ? THEN ? ELSE blob_purged_at END
                WHERE id = ? AND deleted_at IS NULL
                """,
                (stamp, row["kind"] == "file" and blob_deleted, stamp, row["id"])
            )
        except TransientError as e:
            logger.error(f"Could not finalize expired item {row['id']}: {e}")
            if row["id"] not in report.errors:
                report.errors.append(row["id"])
            continue
        report.processed += changed

    if expired:
        logger.info(f"Sweep finalized {report.processed} expired item(s), {len(report.errors)} error(s)")
    return report


async def purge_blobs(
    db: Database,
    blobs: LocalBlobStore,
    now: Optional[datetime] = None,
    grace_seconds: int = BLOB_GRACE_SECONDS,
) -> int:
    """Remove blobs of file items that became terminal more than `grace_seconds` ago."""
    now = ensure_utc(now or utcnow())
    cutoff = format_ts(now - timedelta(seconds=grace_seconds))

    rows = await db.fetchall(
        """
        SELECT id, blob_locator FROM items
        WHERE kind = 'file' AND deleted_at IS NOT NULL
          AND deleted_at <= ? AND blob_purged_at IS NULL
        """,
        (cutoff,)
    )

    purged = 0
    for row in rows:
        if not await _delete_blob(blobs, row["id"], row["blob_locator"]):
            continue
        purged += await db.execute(
            "UPDATE items SET blob_purged_at = ? WHERE id = ? AND blob_purged_at IS NULL",
            (format_ts(now), row["id"])
        )

    if purged:
        logger.info(f"Purged {purged} blob(s) of finalized items")
    return purged


async def cleanup_loop(db: Database, blobs: LocalBlobStore, interval: int = SWEEP_INTERVAL_SECONDS):
    """Run cleanup every `interval` seconds until cancelled."""
    while True:
        try:
            await sweep(db, blobs)
            await purge_blobs(db, blobs)
        except Exception:
            logger.exception("Cleanup error")
        await asyncio.sleep(interval)
