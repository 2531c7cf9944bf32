from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from lyra.config import settings
from lyra.services.gateway import GeneratedImage

logger = logging.getLogger("lyra.artifacts")


ANONYMOUS_OWNER = "anonymous"


class ArtifactStorageError(Exception):
    """A generated image could not be persisted."""


@dataclass(frozen=True)
class StoredArtifact:
    url: str
    thumbnail_url: str | None = None


class ArtifactStore(Protocol):
    async def save(
        self,
        image: GeneratedImage,
        owner_id: str | None,
        asset_id: str,
        *,
        thumbnail: bool = True,
    ) -> StoredArtifact: ...

    async def delete(self, locator: str) -> bool: ...


class LocalArtifactStore:
    """Writes `<root>/<owner>/<asset_id>.png` plus a square WebP thumbnail.

    Locators are `<base_url>/<owner>/<file>`, suitable for a static file mount.
    File I/O and Pillow work run in a thread so the event loop stays free for
    other tasks.
    """

    def __init__(
        self,
        root: str | Path | None = None,
        *,
        base_url: str | None = None,
        thumbnail_size: int | None = None,
        thumbnail_quality: int | None = None,
    ) -> None:
        self.root = Path(root or settings.artifact_root)
        self.base_url = (base_url or settings.artifact_base_url).rstrip("/")
        self.thumbnail_size = thumbnail_size or settings.thumbnail_size
        self.thumbnail_quality = thumbnail_quality or settings.thumbnail_quality

    async def save(
        self,
        image: GeneratedImage,
        owner_id: str | None,
        asset_id: str,
        *,
        thumbnail: bool = True,
    ) -> StoredArtifact:
        return await asyncio.to_thread(self._save_sync, image, owner_id or ANONYMOUS_OWNER, asset_id, thumbnail)

    def _save_sync(self, image: GeneratedImage, owner: str, asset_id: str, thumbnail: bool) -> StoredArtifact:
        owner_dir = self.root / owner
        filename = f"{asset_id}.png"
        thumb_name = f"{asset_id}_thumb.webp"

        try:
            owner_dir.mkdir(parents=True, exist_ok=True)
            (owner_dir / filename).write_bytes(image.data)

            if thumbnail:
                with Image.open(io.BytesIO(image.data)) as img:
                    thumb = ImageOps.fit(img.convert("RGB"), (self.thumbnail_size, self.thumbnail_size))
                    thumb.save(owner_dir / thumb_name, format="WEBP", quality=self.thumbnail_quality)
        except (OSError, UnidentifiedImageError) as e:
            raise ArtifactStorageError(f"Failed to store image {asset_id}: {e}") from e

        logger.info("artifact_saved owner=%s asset_id=%s thumbnail=%s", owner, asset_id, thumbnail)
        return StoredArtifact(
            url=f"{self.base_url}/{owner}/{filename}",
            thumbnail_url=f"{self.base_url}/{owner}/{thumb_name}" if thumbnail else None,
        )

    async def delete(self, locator: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, locator)

    def _delete_sync(self, locator: str) -> bool:
        prefix = f"{self.base_url}/"
        if not locator.startswith(prefix):
            logger.warning("artifact_delete_skipped locator=%s reason=foreign_locator", locator)
            return False

        root = self.root.resolve()
        path = (root / locator[len(prefix):]).resolve()
        if root not in path.parents:
            logger.warning("artifact_delete_skipped locator=%s reason=outside_root", locator)
            return False

        deleted = False
        if path.is_file():
            path.unlink()
            deleted = True

        thumb = path.with_name(f"{path.stem}_thumb.webp")
        if thumb.is_file():
            thumb.unlink()

        return deleted
