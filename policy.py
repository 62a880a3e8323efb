"""
Catalog access policy.

Pure decision functions over catalog/product snapshots (plain dicts as they
come out of MongoDB) and a caller identity. No I/O happens here; every router
and the order engine go through these functions so read-time and order-time
checks cannot drift apart.

Identifiers are compared only in canonical string form. Stored references may
be ObjectIds, strings, or (in old data) embedded user documents; all of them
collapse to the same string before any comparison.
"""
from typing import Any, Iterable, List, Mapping

from bson import ObjectId

ADMIN = "admin"
USER = "user"

CATALOG_SCOPED = "catalog-scoped"
LEGACY_PRODUCT_SCOPED = "legacy-product-scoped"
ACCESS_MODES = (CATALOG_SCOPED, LEGACY_PRODUCT_SCOPED)


def canonical_id(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Mapping):
        inner = value.get("_id", value.get("id"))
        return canonical_id(inner)
    return str(value).strip()


def canonical_ids(values: Iterable[Any]) -> List[str]:
    """Canonicalize and deduplicate, keeping first-seen order."""
    seen = []
    for value in values or []:
        cid = canonical_id(value)
        if cid and cid not in seen:
            seen.append(cid)
    return seen


def id_forms(value: Any) -> list:
    """Stored representations of one id: the canonical string and, when valid, its ObjectId."""
    cid = canonical_id(value)
    if not cid:
        return []
    if ObjectId.is_valid(cid):
        return [cid, ObjectId(cid)]
    return [cid]


def reference_query(field: str, values: Iterable[Any]) -> dict:
    """Match `field` against any stored form of `values`: string, ObjectId or embedded document."""
    forms = [form for value in values for form in id_forms(value)]
    return {"$or": [{field: {"$in": forms}}, {f"{field}._id": {"$in": forms}}]}


def role_of(user: Mapping) -> str:
    if user.get("role") == ADMIN or user.get("isAdmin"):
        return ADMIN
    return USER


def can_read(catalog: Mapping, user_id: Any, role: str) -> bool:
    if role == ADMIN:
        return True
    if catalog.get("isPublic"):
        return True
    uid = canonical_id(user_id)
    if not uid:
        return False
    if uid == canonical_id(catalog.get("ownerId")):
        return True
    return uid in canonical_ids(catalog.get("allowedUserIds"))


def can_edit(catalog: Mapping, user_id: Any, role: str) -> bool:
    if role == ADMIN:
        return True
    uid = canonical_id(user_id)
    return bool(uid) and uid == canonical_id(catalog.get("ownerId"))


def list_accessible(catalogs: Iterable[Mapping], user_id: Any, role: str) -> list:
    catalogs = list(catalogs)
    if role == ADMIN:
        return catalogs
    return [c for c in catalogs if can_read(c, user_id, role)]


def accessible_catalogs_query(user_id: Any, role: str) -> dict:
    """Mongo predicate selecting exactly the catalogs `can_read` accepts."""
    if role == ADMIN:
        return {}
    uid = canonical_id(user_id)
    if not uid:
        return {"isPublic": True}
    forms = id_forms(uid)
    return {"$or": [
        {"isPublic": True},
        {"ownerId": {"$in": forms}},
        {"ownerId._id": {"$in": forms}},
        {"allowedUserIds": {"$in": forms}},
        {"allowedUserIds._id": {"$in": forms}},
    ]}


def recipients_for(catalog: Mapping, users: Iterable[Mapping]) -> list:
    active = [u for u in users if u.get("isActive", True)]
    if catalog.get("isPublic"):
        return [u for u in active if role_of(u) != ADMIN]
    allowed = set(canonical_ids(catalog.get("allowedUserIds")))
    return [u for u in active if canonical_id(u.get("_id")) in allowed]


def can_read_product(product: Mapping, catalog: Mapping, user_id: Any, role: str,
                     mode: str = CATALOG_SCOPED) -> bool:
    if role == ADMIN:
        return True
    if not product.get("isActive", True):
        return False
    if mode == LEGACY_PRODUCT_SCOPED:
        uid = canonical_id(user_id)
        if uid and uid == canonical_id(product.get("createdBy")):
            return True
        return bool(uid) and uid in canonical_ids(product.get("accessibleTo"))
    if catalog is None:
        return False
    return can_read(catalog, user_id, role)
