"""
Image intake: normalize an uploaded label photo and store it.

Images are stored at {user_id}/{timestamp_ms}.jpg in the scans bucket via
the Supabase Storage REST API. Uploads never overwrite (x-upsert: false),
so each call creates a new object. Storage errors propagate to the caller
as StorageError without retry.
"""

import io
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from ..config import Config
from ..errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

# Register HEIF/HEIC opener with Pillow
register_heif_opener()

JPEG_QUALITY = 90


@dataclass
class StoredImage:
    """An uploaded scan image."""
    path: str
    public_url: str


def normalize_to_jpeg(image_bytes: bytes, content_type: str) -> bytes:
    """
    Validate an upload and convert it to JPEG.

    JPEG input under the size limit passes through untouched.

    Raises:
        ValidationError: empty, oversized, unsupported or undecodable image
    """
    if not image_bytes:
        raise ValidationError("Empty image")
    if content_type not in Config.ALLOWED_CONTENT_TYPES:
        raise ValidationError("Invalid image type. Only JPEG, PNG and HEIC are supported.")
    if len(image_bytes) > Config.MAX_IMAGE_SIZE_BYTES:
        raise ValidationError(f"Image too large. Maximum size is {Config.MAX_IMAGE_SIZE_MB}MB.")

    if image_bytes[:2] == b'\xff\xd8':
        return image_bytes

    try:
        img = Image.open(io.BytesIO(image_bytes))
        # JPEG has no alpha channel
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        output = io.BytesIO()
        img.save(output, format="JPEG", quality=JPEG_QUALITY)
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Invalid image format: {e}") from e

    logger.info(f"Converted {content_type} upload to JPEG ({len(image_bytes)} -> {output.tell()} bytes)")
    return output.getvalue()


class SupabaseStorage:
    """Minimal async client for the Supabase Storage REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.supabase_url()).rstrip("/")
        self.service_key = service_key if service_key is not None else Config.service_role_key()
        self.bucket = bucket or Config.storage_bucket()
        self._transport = transport
        self._timeout = timeout if timeout is not None else Config.http_timeout()

    def _client(self) -> httpx.AsyncClient:
        if not self.base_url:
            raise StorageError("Storage is not configured (SUPABASE_URL missing)")
        headers = {}
        if self.service_key:
            headers = {
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
            }
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage request failed: {e}") from e

        if response.status_code >= 400:
            raise StorageError(
                f"Storage returned {response.status_code} for {method} {url}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
        return response

    async def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None:
        """Create an object. Fails if the key already exists."""
        await self._send(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )

    async def list_objects(self, prefix: str, limit: int = 1000) -> list[str]:
        """Object names directly under a folder prefix."""
        response = await self._send(
            "POST",
            f"/storage/v1/object/list/{self.bucket}",
            json={"prefix": prefix, "limit": limit, "offset": 0},
        )
        return [item["name"] for item in response.json() if item.get("name")]

    async def remove_objects(self, paths: list[str]) -> int:
        if not paths:
            return 0
        response = await self._send(
            "DELETE",
            f"/storage/v1/object/{self.bucket}",
            json={"prefixes": paths},
        )
        return len(response.json())


class ImageIntake:
    """Stores scan images and returns their public URLs."""

    def __init__(self, storage: Optional[SupabaseStorage] = None):
        self.storage = storage or SupabaseStorage()

    @staticmethod
    def object_path(user_id: str, timestamp_ms: Optional[int] = None) -> str:
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return f"{user_id}/{timestamp_ms}.jpg"

    async def upload(self, image_bytes: bytes, user_id: str, content_type: str = "image/jpeg") -> StoredImage:
        """
        Normalize and upload a scan image.

        Raises:
            ValidationError: image rejected before upload
            StorageError: storage write failed (not retried)
        """
        jpeg = normalize_to_jpeg(image_bytes, content_type)
        path = self.object_path(user_id)
        await self.storage.upload(path, jpeg, "image/jpeg")
        logger.info(f"Uploaded scan image {path} ({len(jpeg)} bytes)")
        return StoredImage(path=path, public_url=self.storage.public_url(path))

    async def delete_user_objects(self, user_id: str) -> int:
        """Remove every stored image under the user's folder."""
        names = await self.storage.list_objects(user_id)
        deleted = await self.storage.remove_objects([f"{user_id}/{name}" for name in names])
        logger.info(f"Deleted {deleted} stored image(s) for user {user_id}")
        return deleted

    async def delete_object(self, path: str) -> int:
        """Remove one stored image."""
        deleted = await self.storage.remove_objects([path])
        logger.info(f"Deleted stored image {path}")
        return deleted
