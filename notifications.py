"""
Notification fan-out.

Catalog and order mutations hand a recipient list to `NotificationDispatcher`.
For each recipient one notification row is persisted, then delivery is tried
over live WebSocket connections and Expo push tokens. A failure for one
recipient is logged and never stops the others, and nothing here is awaited by
the request that triggered it (routers schedule it as a background task).
Blocking Mongo calls run in the threadpool so the event loop is never held.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from fastapi import WebSocket
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import config
from database import create_document, find_by_id, get_documents, now, object_id, serialize_doc
from errors import NotFound
from policy import ADMIN, canonical_id, recipients_for, role_of
from schemas import Notification

logger = logging.getLogger(__name__)

EXPO_CHUNK = 100
INBOX_LIMIT = 50


class NotificationTransport:
    """Live WebSocket connections grouped by canonical user id."""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def register(self, user_id: Any, websocket: WebSocket):
        async with self._lock:
            self._connections[canonical_id(user_id)].add(websocket)
        logger.info("Socket registered for user %s", canonical_id(user_id))

    async def unregister(self, user_id: Any, websocket: WebSocket):
        uid = canonical_id(user_id)
        async with self._lock:
            sockets = self._connections.get(uid)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._connections[uid]

    def connection_count(self, user_id: Any) -> int:
        return len(self._connections.get(canonical_id(user_id), ()))

    async def send(self, user_id: Any, event: str, payload: dict) -> int:
        """Emit to every connection of the user; broken connections are dropped."""
        uid = canonical_id(user_id)
        delivered = 0
        for websocket in list(self._connections.get(uid, ())):
            try:
                await websocket.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception:
                logger.warning("Dropping dead socket for user %s", uid, exc_info=True)
                await self.unregister(uid, websocket)
        return delivered


class PushSender:
    """Expo push delivery."""

    def __init__(self, url: str = config.EXPO_PUSH_URL, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.transport = transport

    async def send(self, tokens: Iterable[str], title: str, body: str, data: Optional[dict] = None) -> int:
        messages = [
            {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": data or {},
                "priority": "high",
                "channelId": "default",
            }
            for token in tokens
            if token and token.startswith("ExponentPushToken")
        ]
        if not messages:
            return 0
        sent = 0
        async with httpx.AsyncClient(transport=self.transport, timeout=10) as client:
            for start in range(0, len(messages), EXPO_CHUNK):
                chunk = messages[start:start + EXPO_CHUNK]
                try:
                    response = await client.post(self.url, json=chunk, headers={"Accept": "application/json"})
                    response.raise_for_status()
                except httpx.HTTPError:
                    logger.exception("Failed to send %d push notifications", len(chunk))
                    continue
                for ticket, message in zip(response.json().get("data", []), chunk):
                    if ticket.get("status") == "error":
                        logger.error("Push error for token %s: %s", message["to"], ticket.get("message"))
                    else:
                        sent += 1
        return sent


class NotificationDispatcher:
    def __init__(self, db: Database, transport: NotificationTransport, push: PushSender):
        self.db = db
        self.transport = transport
        self.push = push

    async def notify(self, users: Iterable[dict], title: str, body: str, data: Optional[dict] = None) -> int:
        """Persist and deliver to each user; returns how many rows were stored."""
        data = data or {}
        stored = 0
        for user in users:
            uid = canonical_id(user.get("_id"))
            try:
                notification = Notification(user=uid, title=title, body=body, data=data)
                notification_id = await run_in_threadpool(create_document, self.db, "notification", notification)
                stored += 1
            except Exception:
                logger.exception("Could not store notification for user %s", uid)
                continue
            payload = {"id": notification_id, "title": title, "body": body, "data": data, "read": False}
            try:
                await self.transport.send(uid, "notification", payload)
            except Exception:
                logger.exception("Socket delivery failed for user %s", uid)
            try:
                await self.push.send(user.get("expoPushTokens") or [], title, body, data)
            except Exception:
                logger.exception("Push delivery failed for user %s", uid)
        return stored

    async def dispatch(self, event: str, *args) -> int:
        """Run one event handler; background callers never see its errors."""
        try:
            return await getattr(self, event)(*args)
        except Exception:
            logger.exception("Notification event %s failed", event)
            return 0

    async def _active_users(self) -> List[dict]:
        return await run_in_threadpool(lambda: list(self.db["user"].find({"isActive": {"$ne": False}})))

    async def catalog_created(self, catalog: dict) -> int:
        users = recipients_for(catalog, await self._active_users())
        return await self.notify(
            users,
            "New catalog",
            f"Catalog '{catalog['name']}' is now available.",
            {"type": "catalog", "catalogId": canonical_id(catalog["_id"])},
        )

    async def product_added(self, catalog: dict, product: dict) -> int:
        users = recipients_for(catalog, await self._active_users())
        return await self.notify(
            users,
            "New product",
            f"{product['name']} was added to '{catalog['name']}'.",
            {
                "type": "product",
                "catalogId": canonical_id(catalog["_id"]),
                "productId": canonical_id(product["_id"]),
            },
        )

    async def products_added(self, catalog: dict, products: List[dict]) -> int:
        if len(products) == 1:
            return await self.product_added(catalog, products[0])
        if not products:
            return 0
        users = recipients_for(catalog, await self._active_users())
        return await self.notify(
            users,
            "New products",
            f"{len(products)} products were added to '{catalog['name']}'.",
            {"type": "product", "catalogId": canonical_id(catalog["_id"])},
        )

    async def order_created(self, order: dict, customer: dict) -> int:
        admins = [u for u in await self._active_users() if role_of(u) == ADMIN]
        return await self.notify(
            admins,
            "New order",
            f"{customer.get('name', 'A customer')} placed an order of {order['totalAmount']:.2f}.",
            {"type": "order", "orderId": canonical_id(order["_id"]), "catalogId": order["catalogId"]},
        )

    async def order_status_changed(self, order: dict) -> int:
        owner = await run_in_threadpool(find_by_id, self.db, "user", order["userId"])
        if owner is None or owner.get("isActive") is False:
            return 0
        return await self.notify(
            [owner],
            "Order updated",
            f"Your order is now {order['status']}.",
            {"type": "order", "orderId": canonical_id(order["_id"]), "status": order["status"]},
        )


# ---------- Inbox ----------

def list_notifications(db: Database, user_id: str) -> list:
    latest = get_documents(db, "notification", {"user": user_id}, limit=INBOX_LIMIT,
                           sort=[("createdAt", -1), ("_id", -1)])
    return [serialize_doc(n) for n in latest]


def unread_count(db: Database, user_id: str) -> int:
    return db["notification"].count_documents({"user": user_id, "read": False})


def _owned(db: Database, notification_id: str, user_id: str) -> dict:
    oid = object_id(notification_id)
    notification = db["notification"].find_one({"_id": oid, "user": user_id}) if oid else None
    if notification is None:
        raise NotFound("Notification not found")
    return notification


def mark_read(db: Database, notification_id: str, user_id: str) -> dict:
    notification = _owned(db, notification_id, user_id)
    db["notification"].update_one({"_id": notification["_id"]}, {"$set": {"read": True, "updatedAt": now()}})
    notification["read"] = True
    return serialize_doc(notification)


def mark_all_read(db: Database, user_id: str) -> int:
    result = db["notification"].update_many({"user": user_id, "read": False}, {"$set": {"read": True}})
    return result.modified_count


def delete_notification(db: Database, notification_id: str, user_id: str):
    notification = _owned(db, notification_id, user_id)
    db["notification"].delete_one({"_id": notification["_id"]})
