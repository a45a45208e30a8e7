"""Best-effort derivative (thumbnail) generation"""

import asyncio
import os
from pathlib import Path
from typing import Optional, Tuple
import logging

from PIL import Image

from ..storage.mime import is_image
from ..storage.paths import THUMBNAIL

logger = logging.getLogger(__name__)

# Formats Pillow can only write in these modes
_MODE_LIMITS = {
    'JPEG': ('RGB', 'L', 'CMYK'),
}


def thumbnail_path_for(source_path: Path) -> Path:
    """<file_dir>/original/<name> -> <file_dir>/thumbnail/<name>"""
    source_path = Path(source_path)
    return source_path.parent.parent / THUMBNAIL / source_path.name


def render_thumbnail(source_path: Path, target_path: Path, size: Tuple[int, int]):
    """
    Fit the image inside `size`, keeping aspect ratio.
    Image.thumbnail never enlarges, so small images keep their dimensions.
    """
    with Image.open(source_path) as img:
        fmt = img.format or 'PNG'
        img.thumbnail(size)

        allowed_modes = _MODE_LIMITS.get(fmt)
        if allowed_modes and img.mode not in allowed_modes:
            img = img.convert('RGB')

        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target_path.with_name(f".{target_path.name}.tmp")
        try:
            img.save(tmp_path, format=fmt)
            os.replace(tmp_path, target_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


class DerivativeGenerator:
    """
    Produces a bounded preview for image uploads.
    Failures are logged and reported as "no derivative", never raised.
    """

    def __init__(self, size: Tuple[int, int] = (200, 200)):
        self.size = tuple(size)

    async def generate(self, source_path: Path, mime_type: str) -> Optional[Path]:
        if not is_image(mime_type):
            return None

        target_path = thumbnail_path_for(source_path)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, render_thumbnail, Path(source_path), target_path, self.size
            )
        except Exception as e:
            logger.warning(f"Thumbnail generation failed for {source_path}: {e}")
            # Do not leave a preview from an earlier run next to a new original
            try:
                target_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as unlink_error:
                logger.warning(f"Could not remove stale thumbnail {target_path}: {unlink_error}")
            return None

        logger.debug(f"Generated thumbnail {target_path}")
        return target_path
