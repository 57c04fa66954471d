"""
Client-side image optimization before upload.

Large camera captures are down-scaled and recompressed as JPEG so the
document scan uploads quickly on mobile connections. Optimization is
best-effort: any failure returns the original file unchanged.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)


@dataclass
class ImageFile:
    """An image as picked or captured on the device."""
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path, content_type: str) -> "ImageFile":
        return cls(name=Path(path).name, content_type=content_type, data=Path(path).read_bytes())


@dataclass
class OptimizationConfig:
    """Configuration for upload optimization."""
    min_compress_bytes: int = 600 * 1024  # Smaller files are sent as-is
    max_dimension: int = 1600  # Longest edge after resize
    jpeg_quality: int = 82
    min_reduction_ratio: float = 0.95  # Keep result only if < 95% of original


class ImageOptimizer:
    """
    Shrinks oversized images before they are sent for document processing.

    Usage:
        optimizer = ImageOptimizer()
        upload = optimizer.optimize(ImageFile(name, content_type, data))
    """

    def __init__(self, config: Optional[OptimizationConfig] = None):
        self.config = config or OptimizationConfig()

    def should_optimize(self, file: ImageFile) -> bool:
        if not (file.content_type or "").lower().startswith("image/"):
            return False
        return file.size >= self.config.min_compress_bytes

    def optimize(self, file: ImageFile) -> ImageFile:
        """Return a smaller JPEG replacement, or the original file."""
        if not self.should_optimize(file):
            return file

        try:
            compressed = self._recompress(file.data)
        except Exception as e:
            logger.warning(f"Image optimization failed, using original: {e}")
            return file

        if len(compressed) >= file.size * self.config.min_reduction_ratio:
            logger.debug(
                f"Compression not worth it for {file.name}: "
                f"{file.size:,} → {len(compressed):,} bytes"
            )
            return file

        logger.info(
            f"Optimized {file.name}: {file.size:,} → {len(compressed):,} bytes "
            f"({(1 - len(compressed) / file.size) * 100:.1f}% reduction)"
        )
        return ImageFile(
            name=f"{Path(file.name).stem}-optimized.jpg",
            content_type="image/jpeg",
            data=compressed,
        )

    def _recompress(self, data: bytes) -> bytes:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            # Pixels as displayed; the orientation tag is not carried over
            img = ImageOps.exif_transpose(img)
            img = self._to_rgb(img)
            img = self._resize_if_needed(img)

            buffer = io.BytesIO()
            img.save(buffer, "JPEG", quality=self.config.jpeg_quality, optimize=True)
            return buffer.getvalue()

    def _to_rgb(self, img: Image.Image) -> Image.Image:
        """Flatten transparency onto white for JPEG."""
        if img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[3])
            return background
        if img.mode != "RGB":
            return img.convert("RGB")
        return img

    def _resize_if_needed(self, img: Image.Image) -> Image.Image:
        """Scale the longest edge down to max_dimension. Never upscales."""
        longest = max(img.size)
        if longest <= self.config.max_dimension:
            return img

        ratio = self.config.max_dimension / longest
        new_size = (
            max(1, round(img.width * ratio)),
            max(1, round(img.height * ratio)),
        )
        logger.debug(f"Resizing from {img.size} to {new_size}")
        return img.resize(new_size, Image.Resampling.LANCZOS)


# Global instance
_optimizer: Optional[ImageOptimizer] = None


def get_optimizer() -> ImageOptimizer:
    """Get or create the global optimizer instance."""
    global _optimizer
    if _optimizer is None:
        _optimizer = ImageOptimizer()
    return _optimizer


def optimize_image_for_processing(file: ImageFile) -> ImageFile:
    """Convenience wrapper around the global optimizer."""
    return get_optimizer().optimize(file)
