"""Target size resolution and resize with contain (letterbox), cover (crop) or fill (stretch)."""
import logging
from typing import Optional, Tuple

from PIL import Image

from app.conversion.models import FitMode

logger = logging.getLogger("converter.resize")

TRANSPARENT = (0, 0, 0, 0)
WHITE = (255, 255, 255)


def _clamp(value: int, upper: int) -> int:
    return max(1, min(int(value), upper))


def resolve_target_size(
    orig_width: int,
    orig_height: int,
    width: Optional[int],
    height: Optional[int],
    maintain_aspect_ratio: bool,
    max_width: int,
    max_height: int,
) -> Tuple[int, int]:
    """
    Output size for a source of (orig_width, orig_height).
    - nothing requested: keep the original size.
    - one side requested and aspect kept: derive the other from the source ratio.
    - both requested and aspect kept: fit inside the box; if the box is wider than
      the source ratio the width follows the height, otherwise the height follows the width.
    - aspect not kept: use what was requested, original size for a missing side.
    The result never exceeds (max_width, max_height); with the aspect kept both
    sides shrink together.
    """
    ratio = orig_width / orig_height
    if width is None and height is None:
        tw, th = orig_width, orig_height
    elif not maintain_aspect_ratio:
        tw = width if width is not None else orig_width
        th = height if height is not None else orig_height
    elif width is not None and height is not None:
        if width / height > ratio:
            tw, th = round(height * ratio), height
        else:
            tw, th = width, round(width / ratio)
    elif width is not None:
        tw, th = width, round(width / ratio)
    else:
        tw, th = round(height * ratio), height

    if maintain_aspect_ratio and (tw > max_width or th > max_height):
        scale = min(max_width / tw, max_height / th)
        tw, th = round(tw * scale), round(th * scale)
    return _clamp(tw, max_width), _clamp(th, max_height)


def resize_to_fit(
    img: Image.Image,
    target_width: int,
    target_height: int,
    fit: FitMode = FitMode.FILL,
    background: Optional[tuple] = None,
) -> Image.Image:
    """
    Produce an image of exactly (target_width, target_height).
    - fill: stretch to the box.
    - cover: scale to cover the box and centre-crop (may lose edges).
    - contain: scale to fit inside the box, pad the rest with ``background``
      (transparent for images with alpha, white otherwise).
    """
    w, h = img.size
    tw, th = target_width, target_height
    if w == tw and h == th:
        return img.copy()

    if fit == FitMode.FILL:
        return img.resize((tw, th), Image.Resampling.LANCZOS)

    if fit == FitMode.COVER:
        scale = max(tw / w, th / h)
        new_w, new_h = max(tw, round(w * scale)), max(th, round(h * scale))
        resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
        left = (new_w - tw) // 2
        top = (new_h - th) // 2
        return resized.crop((left, top, left + tw, top + th))

    if fit == FitMode.CONTAIN:
        if background is None:
            background = TRANSPARENT if img.mode == "RGBA" else WHITE
        scale = min(tw / w, th / h)
        new_w, new_h = max(1, round(w * scale)), max(1, round(h * scale))
        resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
        out = Image.new(img.mode, (tw, th), background)
        out.paste(resized, ((tw - new_w) // 2, (th - new_h) // 2))
        return out

    logger.warning("Unknown fit %s, using fill", fit)
    return resize_to_fit(img, tw, th, FitMode.FILL)
