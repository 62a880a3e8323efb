"""Per-user wishlist. Only products the user can still read are ever returned."""
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalogs import CatalogRepository, present_product
from database import create_document, object_id
from errors import Conflict, NotFound
from policy import canonical_id
from schemas import Wishlist


def list_wishlist(db: Database, repo: CatalogRepository, user: dict) -> list:
    entries = list(db["wishlist"].find({"userId": user["id"]}).sort([("createdAt", -1), ("_id", -1)]))
    products = []
    for entry in entries:
        try:
            products.append(present_product(repo.get_readable_product(entry["productId"], user)))
        except NotFound:
            continue
    return products


def add_to_wishlist(db: Database, repo: CatalogRepository, user: dict, product_id: str):
    product = repo.get_readable_product(product_id, user)
    pid = canonical_id(product["_id"])
    if db["wishlist"].find_one({"userId": user["id"], "productId": pid}):
        raise Conflict("Product already in wishlist")
    try:
        create_document(db, "wishlist", Wishlist(user_id=user["id"], product_id=pid))
    except DuplicateKeyError:
        raise Conflict("Product already in wishlist")


def remove_from_wishlist(db: Database, user: dict, product_id: str):
    pid = canonical_id(object_id(product_id) or product_id)
    if db["wishlist"].delete_one({"userId": user["id"], "productId": pid}).deleted_count == 0:
        raise NotFound("Product not found in wishlist")


def in_wishlist(db: Database, user: dict, product_id: str) -> bool:
    return db["wishlist"].find_one({"userId": user["id"], "productId": canonical_id(product_id)}) is not None
