"""Size presets per jewelry type and clasp reference images."""
import logging
from typing import get_args

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now, serialize_doc
from errors import NotFound, ValidationError
from schemas import ClaspImageRequest, JewelryType, SizePresetRequest

logger = logging.getLogger(__name__)

JEWELRY_TYPES = get_args(JewelryType)


def _clean(values):
    return [v.strip() for v in values if v and v.strip()]


def size_presets(db: Database) -> dict:
    presets = {}
    for preset in db["sizepreset"].find({}).sort("type", 1):
        presets[preset["type"]] = {
            "availableSizes": preset.get("availableSizes", []),
            "availableHeights": preset.get("availableHeights", []),
        }
    return presets


def save_size_preset(db: Database, jewelry_type: str, payload: SizePresetRequest) -> dict:
    jewelry_type = jewelry_type.lower().strip()
    if jewelry_type not in JEWELRY_TYPES:
        raise ValidationError(f"Invalid type. Must be one of: {', '.join(JEWELRY_TYPES)}")
    preset = db["sizepreset"].find_one_and_update(
        {"type": jewelry_type},
        {"$set": {
            "type": jewelry_type,
            "availableSizes": _clean(payload.available_sizes),
            "availableHeights": _clean(payload.available_heights),
            "updatedAt": now(),
        }},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(preset)


def clasp_images(db: Database) -> list:
    return [serialize_doc(c) for c in db["claspimage"].find({}).sort("claspType", 1)]


def clasp_image(db: Database, clasp_type: str) -> dict:
    image = db["claspimage"].find_one({"claspType": clasp_type})
    if image is None:
        raise NotFound("Clasp image not found")
    return serialize_doc(image)


def save_clasp_image(db: Database, payload: ClaspImageRequest, user: dict) -> dict:
    clasp_type = (payload.clasp_type or "").strip()
    image_url = (payload.image_url or "").strip()
    if not clasp_type or not image_url:
        raise ValidationError("claspType and imageUrl are required")
    stamp = now()
    image = db["claspimage"].find_one_and_update(
        {"claspType": clasp_type},
        {
            "$set": {
                "claspType": clasp_type,
                "imageUrl": image_url,
                "label": (payload.label or "").strip() or clasp_type,
                "createdBy": user["id"],
                "updatedAt": stamp,
            },
            "$setOnInsert": {"createdAt": stamp},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Clasp image %s saved by %s", clasp_type, user["email"])
    return serialize_doc(image)


def delete_clasp_image(db: Database, clasp_type: str):
    if db["claspimage"].delete_one({"claspType": clasp_type}).deleted_count == 0:
        raise NotFound("Clasp image not found")
