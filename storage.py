"""
Image storage.

Uploaded images are written under UPLOAD_DIR and served back from `/uploads`.
Anything fronting a CDN only has to provide the same `save` signature.
"""
import base64
import binascii
import logging
import os
import random
import time

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".webp"}
MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class LocalImageStore:
    def __init__(self, directory: str = config.UPLOAD_DIR, base_url: str = config.PUBLIC_BASE_URL,
                 max_bytes: int = config.MAX_UPLOAD_BYTES):
        self.directory = directory
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    def _extension(self, filename: str, mimetype: str = "") -> str:
        ext = os.path.splitext(filename or "")[1].lower()
        if not ext:
            ext = MIME_EXTENSIONS.get((mimetype or "").lower(), "")
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError("Only image files are allowed (jpeg, jpg, png, gif, webp)")
        if mimetype and mimetype.lower() not in MIME_EXTENSIONS:
            raise ValidationError("Only image files are allowed (jpeg, jpg, png, gif, webp)")
        return ext

    def save(self, content: bytes, filename: str, mimetype: str = "") -> dict:
        ext = self._extension(filename, mimetype)
        if not content:
            raise ValidationError("No image file provided")
        if len(content) > self.max_bytes:
            raise ValidationError("File too large. Maximum size is 5MB.")
        os.makedirs(self.directory, exist_ok=True)
        stored = f"product-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"
        with open(os.path.join(self.directory, stored), "wb") as fh:
            fh.write(content)
        logger.info("Stored image %s (%d bytes)", stored, len(content))
        return {
            "imageUrl": f"{self.base_url}/uploads/{stored}",
            "filename": stored,
            "originalName": filename,
            "size": len(content),
        }

    def save_base64(self, data: str, filename: str, mimetype: str = "image/jpeg") -> dict:
        if data.startswith("data:") and "," in data:
            data = data.split(",", 1)[1]
        try:
            content = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Image data is not valid base64")
        return self.save(content, filename, mimetype)
