import logging
import mimetypes
import time
from typing import Optional

from ..backend.base import Backend
from ..core.config import settings

logger = logging.getLogger(__name__)


def object_path(user_id: str, filename: str) -> str:
    """Storage key ``<user_id>/<millis>.<ext>`` for an upload."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{user_id}/{int(time.time() * 1000)}.{ext}"


def guess_content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


class UserMedia:
    """Uploads user content to a storage bucket and hands back public URLs."""

    def __init__(self, backend: Backend, bucket: Optional[str] = None):
        self.backend = backend
        self.bucket = bucket or settings.media_bucket

    async def upload_media(
        self,
        filename: str,
        data: bytes,
        user_id: str,
        content_type: Optional[str] = None,
    ) -> str:
        """Upload a file and return its public URL."""
        path = object_path(user_id, filename)
        await self.backend.upload(
            self.bucket,
            path,
            data,
            content_type=content_type or guess_content_type(filename),
            upsert=False,
        )
        logger.info(f"Uploaded {len(data)} bytes to {self.bucket}/{path}")
        return self.backend.public_url(self.bucket, path)

    async def delete_media(self, path: str) -> None:
        await self.backend.remove(self.bucket, [path])
        logger.info(f"Removed {self.bucket}/{path}")


__all__ = ["UserMedia", "object_path", "guess_content_type"]
