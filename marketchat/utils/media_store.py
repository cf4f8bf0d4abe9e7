import io
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader
from starlette.concurrency import run_in_threadpool

from marketchat.utils.errors import UpstreamDependencyError


logger = logging.getLogger(__name__)


@dataclass
class MediaUpload:
    url: str
    public_id: Optional[str] = None
    duration: float = 0.0


class UnconfiguredMediaStore:

    async def upload_audio(self, data: bytes, public_id: Optional[str] = None) -> MediaUpload:
        raise UpstreamDependencyError("Media store is not configured (set CLOUDINARY_URL)")

    async def delete(self, url: str) -> bool:
        return False


class CloudinaryMediaStore:

    def __init__(self, url: str, folder: str) -> None:
        parsed = urlparse(url)
        cloudinary.config(
            cloud_name=parsed.hostname,
            api_key=parsed.username,
            api_secret=parsed.password,
            secure=True,
        )
        self._folder = folder

    async def upload_audio(self, data: bytes, public_id: Optional[str] = None) -> MediaUpload:
        options = {
            "folder": self._folder,
            "resource_type": "video",  # cloudinary files audio under video
            "format": "mp3",
            "transformation": [{"audio_codec": "mp3", "bit_rate": "128k"}],
        }
        if public_id:
            options["public_id"] = public_id
        try:
            result = await run_in_threadpool(cloudinary.uploader.upload, io.BytesIO(data), **options)
        except Exception as exc:
            logger.error("Audio upload failed: %s", exc)
            raise UpstreamDependencyError(f"Audio upload failed: {exc}") from exc
        logger.info("Audio uploaded to %s", result.get("secure_url"))
        return MediaUpload(
            url=result["secure_url"],
            public_id=result.get("public_id"),
            duration=result.get("duration") or 0.0,
        )

    async def delete(self, url: str) -> bool:
        public_id = public_id_from_url(url)
        if not public_id:
            return False
        try:
            await run_in_threadpool(cloudinary.uploader.destroy, public_id, resource_type="video")
        except Exception as exc:
            logger.warning("Could not delete %s from media store: %s", public_id, exc)
            return False
        return True


def public_id_from_url(url: str) -> Optional[str]:
    path = urlparse(url).path
    if "/upload/" not in path:
        return None
    parts = path.split("/upload/", 1)[1].split("/")
    if parts and parts[0].startswith("v") and parts[0][1:].isdigit():
        parts = parts[1:]
    if not parts or not parts[-1]:
        return None
    parts[-1] = parts[-1].rsplit(".", 1)[0]
    return "/".join(parts)


def build_media_store(cloudinary_url: Optional[str], folder: str):
    if not cloudinary_url:
        return UnconfiguredMediaStore()
    return CloudinaryMediaStore(cloudinary_url, folder)
