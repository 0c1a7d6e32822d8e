"""
Ownership of shared items: one-way claims and delete authorization.
"""
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from database import Database
from item_record import ItemRecord

logger = logging.getLogger(__name__)

CLAIM_UPDATE = """
    UPDATE items
    SET owner_id = ?
    WHERE id = ? AND owner_id IS NULL AND deleted_at IS NULL
    RETURNING id
"""


@dataclass(frozen=True)
class ClaimResult:
    claimed: FrozenSet[str] = field(default_factory=frozenset)


async def claim_items(db: Database, item_ids: Iterable[str], identity: str) -> ClaimResult:
    """
    Attach anonymous items to `identity`.

    Each id is updated on its own; ids that are unknown, deleted or already
    owned (by anyone, including `identity`) are skipped. Replaying the same
    claim returns an empty result.
    """
    if not identity:
        raise ValueError("identity is required to claim items")

    claimed = set()
    for item_id in set(item_ids):
        row = await db.fetchone(CLAIM_UPDATE, (identity, item_id))
        if row is not None:
            claimed.add(row["id"])

    if claimed:
        logger.info(f"Identity {identity} claimed {len(claimed)} item(s)")
    return ClaimResult(frozenset(claimed))


def can_delete(record: ItemRecord, requester: Optional[str]) -> bool:
    """Anonymous items may be deleted by anyone, owned items only by their owner."""
    return record.owner_id is None or record.owner_id == requester
