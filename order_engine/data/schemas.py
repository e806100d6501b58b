"""MongoDB collection names, minimal schemas, and index specs.

Schemas here are *descriptors* for consistency and index creation. The
`orders` collection is a best-effort audit copy of submissions, not the source
of truth for live order state (that lives in the job queue).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING


IndexSpec = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    required_keys: Sequence[str]
    indexes: Sequence[IndexSpec]


ORDERS = "orders"


COLLECTION_SPECS: Dict[str, CollectionSpec] = {
    ORDERS: CollectionSpec(
        name=ORDERS,
        required_keys=("_id", "user_id", "type", "token_in", "token_out", "amount_in", "status", "created_at"),
        indexes=(
            (("user_id", ASCENDING), ("created_at", DESCENDING)),
            (("status", ASCENDING), ("created_at", DESCENDING)),
        ),
    ),
}
