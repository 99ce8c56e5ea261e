"""Pillow-backed codec: metadata reads and a single resize+encode per call."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image

from app.conversion.models import FitMode, ImageFormat
from app.conversion.resize import resize_to_fit
from app.errors import ResourceLimitError

logger = logging.getLogger("converter.codec")

PIL_FORMATS = {
    ImageFormat.JPEG: "JPEG",
    ImageFormat.PNG: "PNG",
    ImageFormat.WEBP: "WEBP",
    ImageFormat.AVIF: "AVIF",
    ImageFormat.GIF: "GIF",
}


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: Optional[str] = None


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info


def _prepare_mode(img: Image.Image, fmt: ImageFormat) -> Image.Image:
    if fmt == ImageFormat.JPEG:
        return img if img.mode == "RGB" else img.convert("RGB")
    if img.mode in ("RGB", "RGBA"):
        return img
    return img.convert("RGBA" if _has_alpha(img) else "RGB")


def _save_kwargs(fmt: ImageFormat, quality: int) -> dict:
    if fmt == ImageFormat.JPEG:
        return {"quality": quality, "optimize": True}
    if fmt == ImageFormat.WEBP:
        return {"quality": quality, "method": 4}
    if fmt == ImageFormat.AVIF:
        return {"quality": quality}
    # png and gif: lossless palette/deflate, quality does not apply
    return {"optimize": True}


class PillowCodec:
    """The only place that touches pixels."""

    def read_info(self, path: Path) -> ImageInfo:
        # Image.open only parses the header; pixels are not decoded here
        try:
            with Image.open(path) as img:
                return ImageInfo(width=img.width, height=img.height, format=img.format)
        except Image.DecompressionBombError as e:
            # header claims more pixels than Pillow will open at all
            raise ResourceLimitError(str(e), code="DIMENSION_LIMIT_EXCEEDED") from e

    def encode(
        self,
        src: Path,
        dest: Path,
        fmt: ImageFormat,
        quality: int,
        width: int,
        height: int,
        fit: FitMode = FitMode.FILL,
    ) -> None:
        with Image.open(src) as img:
            work = _prepare_mode(img, fmt)
            if work.size != (width, height):
                work = resize_to_fit(work, width, height, fit=fit)
            work.save(str(dest), format=PIL_FORMATS[fmt], **_save_kwargs(fmt, quality))
        logger.debug("Encoded %s -> %s (%sx%s, q=%s)", src.name, dest.name, width, height, quality)
