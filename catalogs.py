"""
Catalog repository: catalogs, their products, and product display order.

A product's own `catalogId` decides which catalog it belongs to. The catalog's
`products` list is only the display order; products missing from it (for
example after a crash between inserting a product and appending its id) are
still listed, after the ordered ones.
"""
import logging
from collections import defaultdict
from typing import Iterable, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import policy
from database import create_document, find_by_id, now, object_id, serialize_doc
from errors import Conflict, NotFound, PermissionDenied, ValidationError
from policy import ADMIN, canonical_id, canonical_ids
from schemas import (
    DEFAULT_IMAGE_URL,
    Catalog,
    CatalogUpdateRequest,
    Product,
    ProductCreateRequest,
    ProductSpec,
    ProductUpdateRequest,
)

logger = logging.getLogger(__name__)


def present_product(product: dict) -> dict:
    out = serialize_doc(product)
    out["productId"] = out["id"]
    return out


def present_catalog(catalog: dict, products: Iterable[dict] = ()) -> dict:
    out = serialize_doc(catalog)
    out["catalogId"] = out["id"]
    out["products"] = [present_product(p) for p in products]
    return out


def order_products(catalog: dict, products: Iterable[dict]) -> List[dict]:
    position = {pid: i for i, pid in enumerate(canonical_ids(catalog.get("products")))}
    listed, orphans = [], []
    for product in products:
        (listed if canonical_id(product["_id"]) in position else orphans).append(product)
    listed.sort(key=lambda p: position[canonical_id(p["_id"])])
    orphans.sort(key=lambda p: (p.get("createdAt") is None, p.get("createdAt"), str(p["_id"])))
    return listed + orphans


class CatalogRepository:
    def __init__(self, db: Database, access_mode: str = None, in_memory: bool = None):
        self.db = db
        self.access_mode = access_mode or config.ACCESS_MODE
        if self.access_mode not in policy.ACCESS_MODES:
            raise ValueError(f"Unknown ACCESS_MODE {self.access_mode!r}")
        self.in_memory = config.VISIBILITY_IN_MEMORY if in_memory is None else in_memory

    # ---------- catalogs ----------

    def get(self, catalog_id) -> dict:
        catalog = find_by_id(self.db, "catalog", catalog_id)
        if catalog is None:
            raise NotFound("Catalog not found")
        return catalog

    def get_readable(self, catalog_id, user: dict) -> dict:
        catalog = self.get(catalog_id)
        if not policy.can_read(catalog, user["id"], user["role"]):
            logger.warning("User %s denied read on catalog %s", user["id"], catalog_id)
            raise PermissionDenied("Access denied")
        return catalog

    def get_editable(self, catalog_id, user: dict) -> dict:
        catalog = self.get(catalog_id)
        if not policy.can_edit(catalog, user["id"], user["role"]):
            logger.warning("User %s denied edit on catalog %s", user["id"], catalog_id)
            raise PermissionDenied("Permission denied")
        return catalog

    def list_accessible(self, user: dict) -> List[dict]:
        sort = [("createdAt", -1), ("_id", -1)]
        if self.in_memory:
            # Degraded mode: full scan filtered by the policy functions.
            catalogs = list(self.db["catalog"].find({}).sort(sort))
            return policy.list_accessible(catalogs, user["id"], user["role"])
        query = policy.accessible_catalogs_query(user["id"], user["role"])
        return list(self.db["catalog"].find(query).sort(sort))

    def products_of(self, catalog: dict) -> List[dict]:
        products = self.db["product"].find(policy.reference_query("catalogId", [catalog["_id"]]))
        return order_products(catalog, products)

    def with_products(self, catalogs: List[dict]) -> List[dict]:
        ids = [canonical_id(c["_id"]) for c in catalogs]
        grouped = defaultdict(list)
        for product in self.db["product"].find(policy.reference_query("catalogId", ids)):
            grouped[canonical_id(product["catalogId"])].append(product)
        return [present_catalog(c, order_products(c, grouped[canonical_id(c["_id"])])) for c in catalogs]

    def present(self, catalog: dict) -> dict:
        return present_catalog(catalog, self.products_of(catalog))

    def create_catalog(self, name: Optional[str], description: str, owner_id, allowed_user_ids=(),
                       is_public: bool = True) -> dict:
        if not name or not name.strip():
            raise ValidationError("Catalog name is required", [{"field": "name", "message": "required"}])
        catalog = Catalog(
            name=name.strip(),
            description=(description or "").strip(),
            owner_id=canonical_id(owner_id),
            allowed_user_ids=canonical_ids(allowed_user_ids),
            is_public=is_public,
        )
        catalog_id = create_document(self.db, "catalog", catalog)
        logger.info("Catalog %s (%s) created by %s", catalog_id, catalog.name, catalog.owner_id)
        return self.get(catalog_id)

    def update_catalog(self, catalog_id, user: dict, payload: CatalogUpdateRequest) -> dict:
        catalog = self.get_editable(catalog_id, user)
        changes = {"updatedAt": now()}
        if payload.name is not None:
            if not payload.name.strip():
                raise ValidationError("Catalog name is required", [{"field": "name", "message": "required"}])
            changes["name"] = payload.name.strip()
        if payload.description is not None:
            changes["description"] = payload.description.strip()
        if payload.allowed_user_ids is not None:
            changes["allowedUserIds"] = canonical_ids(payload.allowed_user_ids)
        if payload.is_public is not None:
            changes["isPublic"] = payload.is_public
        self.db["catalog"].update_one({"_id": catalog["_id"]}, {"$set": changes})
        return self.get(catalog_id)

    def update_permissions(self, catalog_id, user: dict, allowed_user_ids=None, is_public=None) -> dict:
        catalog = self.get_editable(catalog_id, user)
        changes = {"updatedAt": now()}
        if allowed_user_ids is not None:
            changes["allowedUserIds"] = canonical_ids(allowed_user_ids)
        if is_public is not None:
            changes["isPublic"] = is_public
        self.db["catalog"].update_one({"_id": catalog["_id"]}, {"$set": changes})
        logger.info("Permissions of catalog %s updated by %s", catalog_id, user["email"])
        return self.get(catalog_id)

    def delete_catalog(self, catalog_id, user: dict) -> int:
        catalog = self.get_editable(catalog_id, user)
        query = policy.reference_query("catalogId", [catalog["_id"]])
        removed = self.db["product"].delete_many(query).deleted_count
        self.db["catalog"].delete_one({"_id": catalog["_id"]})
        logger.info("Catalog %s deleted with %d products", catalog_id, removed)
        return removed

    # ---------- products inside a catalog ----------

    def _check_spec(self, spec: ProductSpec, index: Optional[int] = None) -> Tuple[str, str]:
        errors = []
        prefix = "" if index is None else f"products[{index}]."
        name = (spec.name or "").strip()
        serial = (spec.serial_number or "").strip()
        if not name:
            errors.append({"field": prefix + "name", "message": "required"})
        if not serial:
            errors.append({"field": prefix + "serialNumber", "message": "required"})
        if errors:
            raise ValidationError("Name and serial number are required", errors)
        return name, serial

    def _ensure_serial_free(self, serial: str, exclude_id=None):
        query = {"serialNumber": serial}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if self.db["product"].find_one(query):
            raise Conflict(f"Serial number {serial} already exists")

    def _insert_product(self, product: Product) -> str:
        try:
            return create_document(self.db, "product", product)
        except DuplicateKeyError:
            raise Conflict(f"Serial number {product.serial_number} already exists")

    def _build_product(self, spec: ProductSpec, catalog: dict, user: dict, accessible_to=()) -> Product:
        name, serial = self._check_spec(spec)
        product_type = spec.type or "Other"
        return Product(
            name=name,
            description=(spec.description or "").strip() or f"Type: {product_type}, Serial: {serial}",
            type=product_type,
            serial_number=serial,
            image_url=spec.image_url or DEFAULT_IMAGE_URL,
            price=spec.price,
            weight=spec.weight,
            show_weight=spec.show_weight,
            height=spec.height,
            clasp=spec.clasp,
            size=spec.size,
            available_sizes=spec.available_sizes,
            available_heights=spec.available_heights,
            stock=spec.stock,
            catalog_id=canonical_id(catalog["_id"]),
            created_by=user["id"],
            accessible_to=canonical_ids(accessible_to),
        )

    def add_product(self, catalog_id, user: dict, spec: ProductSpec, accessible_to=()) -> Tuple[dict, dict]:
        catalog = self.get_editable(catalog_id, user)
        product = self._build_product(spec, catalog, user, accessible_to)
        self._ensure_serial_free(product.serial_number)
        product_id = self._insert_product(product)
        self.db["catalog"].update_one(
            {"_id": catalog["_id"]},
            {"$addToSet": {"products": product_id}, "$set": {"updatedAt": now()}},
        )
        logger.info("Product %s (%s) added to catalog %s", product_id, product.serial_number, catalog_id)
        return self.get(catalog_id), find_by_id(self.db, "product", product_id)

    def reorder_products(self, catalog_id, user: dict, ordered_ids: List[str]) -> dict:
        catalog = self.get_editable(catalog_id, user)
        supplied = [canonical_id(pid) for pid in ordered_ids]
        current = {canonical_id(p["_id"]) for p in self.products_of(catalog)}
        if len(set(supplied)) != len(supplied):
            raise ValidationError("Product order contains duplicates")
        if set(supplied) != current:
            missing = sorted(current - set(supplied))
            unknown = sorted(set(supplied) - current)
            raise ValidationError(
                "Product order must list exactly the catalog's products",
                [{"field": "productIds", "missing": missing, "unknown": unknown}],
            )
        self.db["catalog"].update_one({"_id": catalog["_id"]}, {"$set": {"products": supplied, "updatedAt": now()}})
        return self.get(catalog_id)

    def remove_product(self, catalog_id, user: dict, product_id) -> dict:
        catalog = self.get_editable(catalog_id, user)
        product = find_by_id(self.db, "product", product_id)
        if product is None or canonical_id(product.get("catalogId")) != canonical_id(catalog["_id"]):
            raise NotFound("Product not found")
        self.db["product"].delete_one({"_id": product["_id"]})
        self.db["catalog"].update_one(
            {"_id": catalog["_id"]},
            {"$pull": {"products": canonical_id(product["_id"])}, "$set": {"updatedAt": now()}},
        )
        logger.info("Product %s removed from catalog %s", product_id, catalog_id)
        return self.get(catalog_id)

    def bulk_add_products(self, catalog_id, user: dict, new_specs: List[ProductSpec],
                          existing_ids: List[str]) -> Tuple[dict, List[dict]]:
        """Create new products and move existing ones into the catalog, all-or-nothing on validation."""
        catalog = self.get_editable(catalog_id, user)
        target = canonical_id(catalog["_id"])

        built, serials = [], set()
        for index, spec in enumerate(new_specs):
            self._check_spec(spec, index)
            product = self._build_product(spec, catalog, user)
            if product.serial_number in serials:
                raise Conflict(f"Serial number {product.serial_number} is duplicated in the request")
            self._ensure_serial_free(product.serial_number)
            serials.add(product.serial_number)
            built.append(product)

        moved = []
        for pid in canonical_ids(existing_ids):
            product = find_by_id(self.db, "product", pid)
            if product is None:
                raise NotFound(f"Product {pid} not found")
            if canonical_id(product.get("catalogId")) != target:
                # Moving a product out of a catalog edits that catalog too.
                source = self._catalog_of(product)
                allowed = (user["role"] == ADMIN if source is None
                           else policy.can_edit(source, user["id"], user["role"]))
                if not allowed:
                    logger.warning("User %s denied moving product %s into catalog %s", user["id"], pid, catalog_id)
                    raise PermissionDenied("Permission denied")
            moved.append(product)

        created = []
        for product in built:
            created.append(self._insert_product(product))
        for product in moved:
            previous = product.get("catalogId")
            pid = canonical_id(product["_id"])
            if canonical_id(previous) != target:
                self.db["product"].update_one({"_id": product["_id"]}, {"$set": {"catalogId": target, "updatedAt": now()}})
                old_oid = object_id(previous)
                if old_oid is not None:
                    self.db["catalog"].update_one({"_id": old_oid}, {"$pull": {"products": pid}})
        appended = created + [canonical_id(p["_id"]) for p in moved]
        if appended:
            self.db["catalog"].update_one(
                {"_id": catalog["_id"]},
                {"$addToSet": {"products": {"$each": appended}}, "$set": {"updatedAt": now()}},
            )
        logger.info("Bulk add on catalog %s: %d created, %d moved", catalog_id, len(created), len(moved))
        new_products = [find_by_id(self.db, "product", pid) for pid in created]
        return self.get(catalog_id), new_products

    # ---------- standalone products ----------

    def _catalog_of(self, product: dict) -> Optional[dict]:
        return find_by_id(self.db, "catalog", product.get("catalogId"))

    def get_product(self, product_id) -> dict:
        product = find_by_id(self.db, "product", product_id)
        if product is None:
            raise NotFound("Product not found")
        return product

    def get_readable_product(self, product_id, user: dict) -> dict:
        product = self.get_product(product_id)
        catalog = self._catalog_of(product)
        if not policy.can_read_product(product, catalog, user["id"], user["role"], self.access_mode):
            # Inaccessible products are reported as absent.
            raise NotFound("Product not found")
        return product

    def list_products(self, user: dict) -> List[dict]:
        sort = [("createdAt", -1), ("_id", -1)]
        if user["role"] == ADMIN:
            return list(self.db["product"].find({}).sort(sort))
        active = {"isActive": {"$ne": False}}
        if self.access_mode == policy.LEGACY_PRODUCT_SCOPED:
            granted = (policy.reference_query("accessibleTo", [user["id"]])["$or"]
                       + policy.reference_query("createdBy", [user["id"]])["$or"])
            return list(self.db["product"].find({"$and": [{"$or": granted}, active]}).sort(sort))
        catalog_ids = [c["_id"] for c in self.list_accessible(user)]
        query = {"$and": [policy.reference_query("catalogId", catalog_ids), active]}
        return list(self.db["product"].find(query).sort(sort))

    def create_product(self, user: dict, payload: ProductCreateRequest) -> Tuple[dict, dict]:
        if not payload.catalog_id:
            raise ValidationError("Catalog ID is required", [{"field": "catalogId", "message": "required"}])
        return self.add_product(payload.catalog_id, user, payload, accessible_to=payload.accessible_to)

    def update_product(self, product_id, payload: ProductUpdateRequest) -> dict:
        product = self.get_product(product_id)
        pid = canonical_id(product["_id"])
        changes = payload.model_dump(by_alias=True, exclude_none=True)
        for field in ("name", "serialNumber"):
            if field in changes:
                changes[field] = changes[field].strip()
                if not changes[field]:
                    raise ValidationError(f"{field} cannot be empty", [{"field": field, "message": "required"}])
        if "serialNumber" in changes:
            self._ensure_serial_free(changes["serialNumber"], exclude_id=product["_id"])
        if "accessibleTo" in changes:
            changes["accessibleTo"] = canonical_ids(changes["accessibleTo"])
        if "catalogId" in changes:
            target = self.get(changes["catalogId"])
            changes["catalogId"] = canonical_id(target["_id"])
            if changes["catalogId"] != canonical_id(product.get("catalogId")):
                old_oid = object_id(product.get("catalogId"))
                if old_oid is not None:
                    self.db["catalog"].update_one({"_id": old_oid}, {"$pull": {"products": pid}})
                self.db["catalog"].update_one({"_id": target["_id"]}, {"$addToSet": {"products": pid}})
        changes["updatedAt"] = now()
        try:
            self.db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict(f"Serial number {changes['serialNumber']} already exists")
        return self.get_product(product_id)

    def delete_product(self, product_id):
        product = self.get_product(product_id)
        pid = canonical_id(product["_id"])
        self.db["product"].delete_one({"_id": product["_id"]})
        old_oid = object_id(product.get("catalogId"))
        if old_oid is not None:
            self.db["catalog"].update_one({"_id": old_oid}, {"$pull": {"products": pid}})
        logger.info("Product %s deleted", pid)

    def assign_product(self, product_id, user_ids: List[str]) -> dict:
        product = self.get_product(product_id)
        ids = canonical_ids(user_ids)
        oids = [object_id(uid) for uid in ids]
        if None in oids or self.db["user"].count_documents({"_id": {"$in": oids}}) != len(ids):
            raise ValidationError("Some users not found")
        self.db["product"].update_one({"_id": product["_id"]}, {"$set": {"accessibleTo": ids, "updatedAt": now()}})
        return self.get_product(product_id)
