"""
Access decisions and the atomic read-access transaction.

`evaluate` is a pure function of the record, the clock and the presented
secret. `access_item` turns an allowed decision into a single conditional
UPDATE so that concurrent readers of one item can never overrun its quota.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from database import Database
from item_record import ItemKind, ItemRecord, ensure_utc, format_ts
from models import ContentView
from security import log_security_event

logger = logging.getLogger(__name__)

Verifier = Callable[[str, str], bool]


class AccessDecision(str, Enum):
    ALLOWED = "allowed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    SECRET_REQUIRED = "secret_required"
    BAD_SECRET = "bad_secret"

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOWED


def evaluate(
    record: Optional[ItemRecord],
    now: datetime,
    presented_secret: Optional[str] = None,
    verify: Optional[Verifier] = None,
) -> AccessDecision:
    """
    Decide whether `record` may be read at `now`.

    Checks run in a fixed order and the first match wins. Deleted items
    report NOT_FOUND, exactly like ids that never existed.
    """
    if record is None or record.is_deleted:
        return AccessDecision.NOT_FOUND
    if record.is_expired(now):
        return AccessDecision.EXPIRED
    if record.requires_secret:
        if not presented_secret:
            return AccessDecision.SECRET_REQUIRED
        if verify is None or not verify(presented_secret, record.secret_digest):
            return AccessDecision.BAD_SECRET
    if record.quota_met():
        return AccessDecision.EXHAUSTED
    return AccessDecision.ALLOWED


@dataclass(frozen=True)
class AccessResult:
    decision: AccessDecision
    view: Optional[ContentView] = None

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


# Re-checks liveness, expiry and quota against the row as it is at write time.
# SET expressions see the pre-update values, so `view_count + 1` is the
# post-increment count.
ACCESS_UPDATE = """
    UPDATE items
    SET view_count = view_count + 1,
        download_count = CASE WHEN kind = 'file'
                              THEN download_count + 1
                              ELSE download_count END,
        deleted_at = CASE
            WHEN is_one_time = 1 THEN :now
            WHEN max_views IS NOT NULL AND view_count + 1 >= max_views THEN :now
            ELSE NULL END
    WHERE id = :id
      AND deleted_at IS NULL
      AND expires_at > :now
      AND (CASE WHEN is_one_time = 1 THEN view_count < 1
                WHEN max_views IS NOT NULL THEN view_count < max_views
                ELSE 1 END)
    RETURNING *
"""


async def load_record(db: Database, item_id: str) -> Optional[ItemRecord]:
    row = await db.fetchone("SELECT * FROM items WHERE id = ?", (item_id,))
    return ItemRecord.from_row(row) if row else None


def build_view(record: ItemRecord) -> ContentView:
    """Project a record for the reader. The secret digest is never included."""
    fields = {
        "id": record.id,
        "type": record.kind.value,
        "expires_at": record.expires_at,
        "view_count": record.view_count,
        "is_one_time": record.is_one_time,
        "link_name": record.display_name,
    }
    if record.kind is ItemKind.TEXT:
        fields["content"] = record.content
    else:
        fields.update(
            file_locator=record.file.locator,
            file_name=record.file.name,
            file_size=record.file.size,
            file_type=record.file.content_type,
            download_count=record.download_count,
        )
    return ContentView(**fields)


def _lost_race_decision(record: Optional[ItemRecord], now: datetime) -> AccessDecision:
    """
    Outcome for a caller whose allowed read was overtaken on write.

    Readers that were in flight when the last view was consumed see
    EXHAUSTED; if the item was removed any other way it is NOT_FOUND.
    """
    if record is None:
        return AccessDecision.NOT_FOUND
    if record.quota_met():
        return AccessDecision.EXHAUSTED
    if record.is_deleted:
        return AccessDecision.NOT_FOUND
    if record.is_expired(now):
        return AccessDecision.EXPIRED
    return AccessDecision.EXHAUSTED


async def access_item(
    db: Database,
    item_id: str,
    now: datetime,
    presented_secret: Optional[str] = None,
    verify: Optional[Verifier] = None,
) -> AccessResult:
    """
    Perform one read access of `item_id`.

    Deny decisions are returned without touching the row. Raises
    TransientError if the database fails.
    """
    now = ensure_utc(now)
    record = await load_record(db, item_id)

    if record is not None and record.requires_secret and presented_secret and verify:
        # Password hashing is CPU bound; keep it off the event loop
        decision = await asyncio.to_thread(evaluate, record, now, presented_secret, verify)
    else:
        decision = evaluate(record, now, presented_secret, verify)

    if decision is AccessDecision.BAD_SECRET:
        log_security_event("bad_secret", {"id": item_id[:3] + "***"})
    if not decision.allowed:
        return AccessResult(decision)

    row = await db.fetchone(ACCESS_UPDATE, {"id": item_id, "now": format_ts(now)})
    if row is None:
        # Another transaction finalized the item between our read and write
        latest = await load_record(db, item_id)
        decision = _lost_race_decision(latest, now)
        logger.debug(f"Access to {item_id} lost race: {decision.value}")
        return AccessResult(decision)

    updated = ItemRecord.from_row(row)
    if updated.is_deleted:
        logger.info(f"Item {item_id} reached its view limit and was finalized")
    return AccessResult(AccessDecision.ALLOWED, build_view(updated))
