"""
Supabase Storage service for report photos.

This module provides a clean abstraction for uploading images to Supabase Storage.
Paths live in a flat namespace and uploads overwrite on collision.

Usage:
    from ..infrastructure.storage import SupabaseStorageService
    from ..core.exceptions import StorageError

    storage = SupabaseStorageService(client)
    public_url = await storage.upload_image(content, filename, content_type)
"""
import logging
import secrets
import string
import time
from typing import Optional

from .supabase_client import SupabaseClient
from ..core.config import settings
from ..core.exceptions import StorageError, RoadPatrolError

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


class SupabaseStorageService:
    """
    Handles file uploads to Supabase Storage.

    Features:
    - Uploads images to a public bucket for easy access
    - Generates unique paths to avoid collisions
    - Supports image deletion for cleanup
    """

    def __init__(
        self,
        client: SupabaseClient,
        bucket: Optional[str] = None,
        cache_control_seconds: Optional[int] = None,
    ):
        self.client = client
        self.bucket = bucket or settings.SUPABASE_STORAGE_BUCKET
        self.cache_control_seconds = cache_control_seconds or settings.STORAGE_CACHE_CONTROL_SECONDS

    def generate_path(self, filename: Optional[str]) -> str:
        """
        Generate unique storage path for file.

        Format: {epoch_ms}-{random_suffix}.{ext}
        Example: 1717430400000-k3j9xq.jpg
        """
        ext = "jpg"
        if filename and "." in filename:
            candidate = filename.rsplit(".", 1)[1].lower()
            if candidate.isalnum():
                ext = candidate
        return f"{int(time.time() * 1000)}-{random_suffix()}.{ext}"

    async def upload(self, path: str, content: bytes, content_type: str = "image/jpeg") -> str:
        """
        Upload bytes to ``path`` in the bucket.

        Returns:
            The storage path

        Raises:
            StorageError: If upload fails
        """
        upload_url = f"{self.client.storage_url}/object/{self.bucket}/{path}"
        try:
            await self.client.request(
                "POST",
                upload_url,
                content=content,
                headers={
                    "Content-Type": content_type,
                    "cache-control": f"max-age={self.cache_control_seconds}",
                    "x-upsert": "true",  # Overwrite if exists
                },
            )
        except RoadPatrolError as e:
            logger.error(f"Supabase upload failed for {path}: {e.message}")
            raise StorageError(f"Upload failed: {e.message}")

        logger.info(f"Successfully uploaded image to Supabase: {path}")
        return path

    def get_public_url(self, path: str) -> str:
        """Public URL for an existing storage path."""
        return f"{self.client.storage_url}/object/public/{self.bucket}/{path}"

    async def upload_image(
        self,
        content: bytes,
        filename: Optional[str] = None,
        content_type: str = "image/jpeg",
    ) -> str:
        """
        Upload image and return its public URL.

        Raises:
            StorageError: If upload fails
        """
        path = self.generate_path(filename)
        await self.upload(path, content, content_type)
        return self.get_public_url(path)

    async def delete_image(self, path: str) -> bool:
        """
        Delete image from Supabase Storage.

        Returns:
            True if deleted successfully, False otherwise
        """
        delete_url = f"{self.client.storage_url}/object/{self.bucket}/{path}"
        try:
            await self.client.request("DELETE", delete_url, timeout=10.0)
            logger.info(f"Deleted image from Supabase: {path}")
            return True
        except RoadPatrolError as e:
            status = getattr(e, "status_code", None)
            if status == 404:  # already deleted
                return True
            logger.warning(f"Error deleting image {path}: {e.message}")
            return False
