"""
Order engine.

Orders are validated against the catalog they are placed on with the same
policy functions used for reads, priced from the product documents at the
moment of ordering, and moved through a forward-only status machine:

    pending -> confirmed -> shipped -> delivered      (admin)
    pending | confirmed | shipped -> cancelled         (owner or admin)

`delivered` and `cancelled` are terminal.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional

from pymongo.database import Database

import policy
from database import create_document, find_by_id, now, serialize_doc
from errors import InvalidState, NotFound, PermissionDenied, ValidationError
from policy import ADMIN, canonical_id
from schemas import Order, OrderItem, OrderItemRequest

logger = logging.getLogger(__name__)

STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")
VALID_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def can_transition(current: str, new: str) -> bool:
    return new in VALID_TRANSITIONS.get(current, set())


def page_window(page: int, limit: int):
    """(page, limit) -> (skip, count), with both clamped to sane values."""
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def order_total(items: List[dict]) -> float:
    return round(sum(item["price"] * item["quantity"] for item in items), 2)


class OrderEngine:
    def __init__(self, db: Database):
        self.db = db

    def get(self, order_id) -> dict:
        order = find_by_id(self.db, "order", order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def present(self, order: dict) -> dict:
        out = serialize_doc(order)
        catalog = find_by_id(self.db, "catalog", order.get("catalogId"))
        out["catalog"] = {"id": order.get("catalogId"), "name": catalog["name"]} if catalog else None
        customer = find_by_id(self.db, "user", order.get("userId"))
        if customer is not None:
            out["user"] = {"id": order["userId"], "name": customer.get("name"), "email": customer.get("email"),
                           "phone": customer.get("phone", "")}
        else:
            out["user"] = None
        return out

    def place_order(self, user: dict, catalog_id: Optional[str], items: List[OrderItemRequest],
                    notes: str = "") -> dict:
        if not catalog_id:
            raise ValidationError("Catalog ID is required", [{"field": "catalogId", "message": "required"}])
        if not items:
            raise ValidationError("Order items are required", [{"field": "items", "message": "required"}])
        errors = [
            {"field": f"items[{i}]", "message": "productId and quantity >= 1 are required"}
            for i, item in enumerate(items)
            if not item.product_id or item.quantity < 1
        ]
        if errors:
            raise ValidationError("Each item must have productId and quantity >= 1", errors)

        catalog = find_by_id(self.db, "catalog", catalog_id)
        if catalog is None:
            raise NotFound("Catalog not found")
        if not policy.can_read(catalog, user["id"], user["role"]):
            logger.warning("User %s tried to order from catalog %s without access", user["id"], catalog_id)
            raise PermissionDenied("Access denied to catalog")
        catalog_key = canonical_id(catalog["_id"])

        snapshot = []
        for item in items:
            product = find_by_id(self.db, "product", item.product_id)
            if product is None:
                raise NotFound(f"Product {item.product_id} not found")
            if canonical_id(product.get("catalogId")) != catalog_key:
                raise InvalidState(f"Product {product['name']} is not in this catalog")
            if not policy.can_read_product(product, catalog, user["id"], user["role"]):
                # Deactivated products cannot be ordered by customers.
                raise NotFound(f"Product {item.product_id} not found")
            snapshot.append(OrderItem(
                product_id=canonical_id(product["_id"]),
                quantity=item.quantity,
                price=float(product.get("price") or 0),
                name=product["name"],
                size=item.size or product.get("size"),
                clasp=item.clasp or product.get("clasp"),
                height=item.height or product.get("height"),
                weight=product.get("weight"),
            ))

        order = Order(
            user_id=user["id"],
            catalog_id=catalog_key,
            items=snapshot,
            total_amount=order_total([i.model_dump() for i in snapshot]),
            notes=(notes or "").strip(),
        )
        order_id = create_document(self.db, "order", order)
        logger.info("Order %s placed by %s on catalog %s, total %.2f",
                    order_id, user["email"], catalog_key, order.total_amount)
        return self.get(order_id)

    def _move(self, order: dict, new_status: str) -> dict:
        self.db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": new_status, "updatedAt": now()}})
        return self.get(order["_id"])

    def set_status(self, order_id, new_status: Optional[str], user: dict) -> dict:
        if user["role"] != ADMIN:
            raise PermissionDenied("Admin access required")
        if new_status not in STATUSES:
            raise ValidationError("Valid status is required", [{"field": "status", "allowed": list(STATUSES)}])
        order = self.get(order_id)
        if not can_transition(order["status"], new_status):
            raise InvalidState(f"Cannot change order status from {order['status']} to {new_status}")
        logger.info("Order %s: %s -> %s by %s", order_id, order["status"], new_status, user["email"])
        return self._move(order, new_status)

    def cancel(self, order_id, user: dict) -> dict:
        order = self.get(order_id)
        if user["role"] != ADMIN and canonical_id(order.get("userId")) != user["id"]:
            raise PermissionDenied("Access denied")
        if order["status"] == "delivered":
            raise InvalidState("Delivered orders cannot be cancelled")
        if order["status"] == "cancelled":
            raise InvalidState("Order is already cancelled")
        logger.info("Order %s cancelled by %s", order_id, user["email"])
        return self._move(order, "cancelled")

    def get_for(self, order_id, user: dict) -> dict:
        order = self.get(order_id)
        if user["role"] != ADMIN and canonical_id(order.get("userId")) != user["id"]:
            raise PermissionDenied("Access denied")
        return order

    def list_for_user(self, user_id: str, status: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        query = {"userId": canonical_id(user_id)}
        if status:
            query["status"] = status
        cursor = self.db["order"].find(query).sort([("createdAt", -1), ("_id", -1)])
        if limit:
            cursor = cursor.limit(max(int(limit), 1))
        return list(cursor)

    def list_for_admin(self, status: Optional[str] = None, user_id: Optional[str] = None,
                       catalog_id: Optional[str] = None, date_from: Optional[datetime] = None,
                       date_to: Optional[datetime] = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> dict:
        query = {}
        if status:
            query["status"] = status
        if user_id:
            query["userId"] = canonical_id(user_id)
        if catalog_id:
            query["catalogId"] = canonical_id(catalog_id)
        if date_from or date_to:
            query["createdAt"] = {}
            if date_from:
                query["createdAt"]["$gte"] = date_from
            if date_to:
                query["createdAt"]["$lte"] = date_to
        page, limit, skip = page_window(page, limit)
        total = self.db["order"].count_documents(query)
        orders = list(self.db["order"].find(query).sort([("createdAt", -1), ("_id", -1)]).skip(skip).limit(limit))
        return {
            "orders": [self.present(o) for o in orders],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    def delete(self, order_id, user: dict):
        if user["role"] != ADMIN:
            raise PermissionDenied("Admin access required")
        order = self.get(order_id)
        self.db["order"].delete_one({"_id": order["_id"]})
        logger.info("Order %s deleted by %s", order_id, user["email"])
