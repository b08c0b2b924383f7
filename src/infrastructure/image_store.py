# src/infrastructure/image_store.py
import asyncio
import io
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import structlog

from src.exceptions import UploadError

logger = structlog.get_logger(__name__)

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")


@dataclass
class UploadResult:
    url: str
    id: str
    width: int
    height: int


class CloudinaryImageStore:
    """Uploads rendered PNGs; every url returned is HTTPS and publicly fetchable."""

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: int = 60,
    ):
        self.cloud_name = cloud_name or CLOUDINARY_CLOUD_NAME
        self.api_key = api_key or CLOUDINARY_API_KEY
        self.api_secret = api_secret or CLOUDINARY_API_SECRET
        self.timeout = timeout
        if self.configured:
            cloudinary.config(
                cloud_name=self.cloud_name,
                api_key=self.api_key,
                api_secret=self.api_secret,
                secure=True,
            )

    @property
    def configured(self) -> bool:
        return all([self.cloud_name, self.api_key, self.api_secret])

    def _options(self, **extra: Any) -> Dict[str, Any]:
        return dict(extra, timeout=self.timeout)

    async def upload(self, data: bytes, folder: str = "x2ig") -> UploadResult:
        if not self.configured:
            raise UploadError("Cloudinary credentials are not configured")
        try:
            body = await asyncio.to_thread(
                cloudinary.uploader.upload,
                io.BytesIO(data),
                **self._options(folder=folder, resource_type="image"),
            )
        except cloudinary.exceptions.Error as exc:
            raise UploadError(f"Image upload failed: {exc}") from exc

        if not body or not body.get("secure_url"):
            raise UploadError("Upload failed: No result returned")
        result = UploadResult(
            url=body["secure_url"],
            id=body.get("public_id", ""),
            width=int(body.get("width", 0)),
            height=int(body.get("height", 0)),
        )
        logger.info("image_uploaded", image_id=result.id, folder=folder, size=len(data))
        return result

    async def delete(self, image_id: str) -> None:
        if not self.configured:
            raise UploadError("Cloudinary credentials are not configured")
        try:
            body = await asyncio.to_thread(
                cloudinary.uploader.destroy,
                image_id,
                **self._options(resource_type="image"),
            )
        except cloudinary.exceptions.Error as exc:
            raise UploadError(f"Image delete failed: {exc}") from exc

        outcome = (body or {}).get("result")
        if outcome == "not found":
            logger.warning("image_delete_not_found", image_id=image_id)
            return
        if outcome != "ok":
            raise UploadError(f"Image delete failed: {outcome}")
        logger.info("image_deleted", image_id=image_id)
