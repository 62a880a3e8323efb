"""
Identity store: accounts, credentials, roles and push tokens.

Removing a user also removes every reference other documents hold to it
(catalog allow-lists, legacy product allow-lists, notifications, wishlist).
Catalogs they owned stay in place; a dangling owner simply grants no access.
"""
import logging
from typing import Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import hash_password, verify_password
from database import create_document, find_by_id, get_documents, now
from errors import Conflict, Forbidden, NotFound, ValidationError
from policy import ADMIN, canonical_id, id_forms, role_of
from schemas import ProfileUpdateRequest, RegisterRequest, User, UserCreateRequest, UserUpdateRequest

logger = logging.getLogger(__name__)


def public_user(user: dict) -> dict:
    role = role_of(user)
    created = user.get("createdAt")
    return {
        "id": canonical_id(user["_id"]),
        "email": user["email"],
        "name": user.get("name", ""),
        "phone": user.get("phone", ""),
        "isAdmin": role == ADMIN,
        "role": role,
        "isActive": user.get("isActive") is not False,
        "createdAt": created.isoformat() if created else None,
    }


def get_user(db: Database, user_id: str) -> dict:
    user = find_by_id(db, "user", user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(db: Database) -> list:
    return [public_user(u) for u in get_documents(db, "user", sort=[("createdAt", 1), ("_id", 1)])]


def ensure_email_available(db: Database, email: str, exclude_id=None):
    query = {"email": email.lower().strip()}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["user"].find_one(query):
        raise Conflict("User with this email already exists")


def _insert_user(db: Database, name: str, email: str, password: str, role: str = "user",
                 phone: str = "", invited_by: Optional[str] = None) -> dict:
    email = email.lower().strip()
    ensure_email_available(db, email)
    user = User(
        name=name.strip(),
        email=email,
        password=hash_password(password),
        phone=(phone or "").strip(),
        role=role,
        is_admin=role == ADMIN,
        invited_by=invited_by,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("User with this email already exists")
    logger.info("User %s created with role %s", email, role)
    return find_by_id(db, "user", user_id)


def register(db: Database, payload: RegisterRequest) -> dict:
    return _insert_user(db, payload.name, payload.email, payload.password, phone=payload.phone or "")


def create_user(db: Database, payload: UserCreateRequest, created_by: dict) -> dict:
    return _insert_user(db, payload.name, payload.email, payload.password, role=payload.role,
                        invited_by=created_by["id"])


def authenticate(db: Database, email: str, password: str) -> dict:
    user = db["user"].find_one({"email": email.lower().strip()})
    if not user:
        raise ValidationError("Invalid credentials")
    if user.get("isActive") is False:
        raise ValidationError("Account is inactive")
    if not verify_password(password, user.get("password")):
        raise ValidationError("Invalid credentials")
    return user


def _save_changes(db: Database, user: dict, changes: dict):
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise Conflict("User with this email already exists")


def update_user(db: Database, user_id: str, payload: UserUpdateRequest) -> dict:
    user = get_user(db, user_id)
    changes = {}
    if payload.email and payload.email.lower() != user["email"]:
        ensure_email_available(db, payload.email, exclude_id=user["_id"])
        changes["email"] = payload.email.lower().strip()
    if payload.name:
        changes["name"] = payload.name.strip()
    if payload.role is not None:
        changes["role"] = payload.role
        changes["isAdmin"] = payload.role == ADMIN
    if payload.is_active is not None:
        changes["isActive"] = payload.is_active
    changes["updatedAt"] = now()
    _save_changes(db, user, changes)
    return public_user(get_user(db, user_id))


def toggle_status(db: Database, user_id: str, actor: dict) -> dict:
    if canonical_id(user_id) == actor["id"]:
        raise ValidationError("Cannot change your own account status")
    user = get_user(db, user_id)
    active = user.get("isActive") is False
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"isActive": active, "updatedAt": now()}})
    logger.info("User %s active=%s", user["email"], active)
    return public_user(get_user(db, user_id))


def delete_user(db: Database, user_id: str, actor: dict):
    uid = canonical_id(user_id)
    if uid == actor["id"]:
        raise ValidationError("Cannot delete your own account")
    user = get_user(db, user_id)
    db["user"].delete_one({"_id": user["_id"]})
    forms = id_forms(uid)
    for collection, field in (("catalog", "allowedUserIds"), ("product", "accessibleTo")):
        db[collection].update_many({field: {"$in": forms}}, {"$pull": {field: {"$in": forms}}})
        db[collection].update_many({f"{field}._id": {"$in": forms}}, {"$pull": {field: {"_id": {"$in": forms}}}})
    db["notification"].delete_many({"user": uid})
    db["wishlist"].delete_many({"userId": uid})
    logger.info("User %s deleted by %s", user["email"], actor["email"])


def update_profile(db: Database, user_id: str, actor: dict, payload: ProfileUpdateRequest) -> dict:
    if canonical_id(user_id) != actor["id"] and actor["role"] != ADMIN:
        raise Forbidden("Not authorized to update this profile")
    user = get_user(db, user_id)
    changes = {"updatedAt": now()}
    if payload.email is not None and payload.email.lower() != user["email"].lower():
        ensure_email_available(db, payload.email, exclude_id=user["_id"])
        changes["email"] = payload.email.lower().strip()
    if payload.name is not None:
        changes["name"] = payload.name.strip()
    if payload.phone is not None:
        changes["phone"] = payload.phone.strip()
    _save_changes(db, user, changes)
    return public_user(get_user(db, user_id))


def add_push_token(db: Database, user: dict, token: str):
    db["user"].update_one({"_id": user["_id"]}, {"$addToSet": {"expoPushTokens": token.strip()}})


def remove_push_token(db: Database, user: dict, token: str):
    db["user"].update_one({"_id": user["_id"]}, {"$pull": {"expoPushTokens": token.strip()}})


def dashboard(db: Database) -> dict:
    return {
        "totalUsers": db["user"].count_documents({"isAdmin": {"$ne": True}}),
        "totalProducts": db["product"].count_documents({}),
        "activeProducts": db["product"].count_documents({"isActive": True}),
        "totalCatalogs": db["catalog"].count_documents({}),
        "totalOrders": db["order"].count_documents({}),
        "pendingOrders": db["order"].count_documents({"status": "pending"}),
        "completedOrders": db["order"].count_documents({"status": "delivered"}),
    }
