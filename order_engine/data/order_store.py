"""Best-effort order audit store.

One document per order id, written once at submission. Callers never await
this on the execution path; failures surface to the caller's logging only.
"""

from __future__ import annotations

from typing import Any, Dict

from ..execution.schemas import Order, OrderStatus
from .mongo import MongoManager, jsonify
from .schemas import ORDERS


def order_document(order: Order) -> Dict[str, Any]:
    return {
        "_id": order.id,
        "user_id": order.user_id,
        "type": jsonify(order.type),
        "token_in": order.token_in,
        "token_out": order.token_out,
        "amount_in": order.amount_in,
        "status": OrderStatus.pending.value,
        "created_at": order.created_at,
        "last_error": None,
    }


class OrderStore:
    """Thin wrapper around MongoManager for the `orders` collection."""

    def __init__(self, mongo: MongoManager):
        self.mongo = mongo

    async def record_submission(self, order: Order) -> None:
        """Insert-or-ignore: an existing row for the same id is left untouched."""
        await self.mongo.connect()
        doc = order_document(order)
        await self.mongo.collection(ORDERS).update_one(
            {"_id": order.id},
            {"$setOnInsert": doc},
            upsert=True,
        )


__all__ = ["OrderStore", "order_document"]
