"""Image manipulation utilities.

This module wraps the Pillow operations used to turn an uploaded image into
its web derivatives: decoding, orientation fix-up, resizing with one of two
fit modes, and WebP re-encoding. Vector icons bypass all of it and are
returned byte-identical.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError  # type: ignore[import]

from .errors import ProcessingError
from .policies import AssetPolicy, DerivativeSpec, Fit

_SVG_ROOT = re.compile(rb"<svg[\s>]", re.IGNORECASE)

CONTENT_TYPES = {
    "webp": "image/webp",
    "svg": "image/svg+xml",
}


@dataclass(frozen=True)
class Derivative:
    label: str
    data: bytes = field(repr=False)
    format: str
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def extension(self) -> str:
        return f".{self.format}"

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]


@dataclass(frozen=True)
class ImageInfo:
    format: Optional[str]
    width: int
    height: int
    mode: str
    has_alpha: bool
    size: int


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _open_image(data: bytes) -> Image.Image:
    """Decode raw bytes, apply EXIF orientation and normalise the mode."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise ProcessingError(f"Could not decode image: {exc}") from exc
    img = ImageOps.exif_transpose(img)
    target_mode = "RGBA" if _has_alpha(img) else "RGB"
    if img.mode != target_mode:
        img = img.convert(target_mode)
    return img


def probe(data: bytes) -> ImageInfo:
    """Read format and dimensions without decoding the pixel data."""
    try:
        img = Image.open(BytesIO(data))
    except (UnidentifiedImageError, OSError) as exc:
        raise ProcessingError(f"Could not read image header: {exc}") from exc
    return ImageInfo(
        format=img.format,
        width=img.width,
        height=img.height,
        mode=img.mode,
        has_alpha=_has_alpha(img),
        size=len(data),
    )


def resize(img: Image.Image, spec: DerivativeSpec) -> Image.Image:
    """Resize ``img`` according to the derivative's fit mode.

    ``Fit.INSIDE`` keeps the aspect ratio and never enlarges the source;
    ``Fit.FILL`` always returns exactly ``spec.width`` x ``spec.height``,
    cropping around the centre.
    """
    if spec.fit is Fit.FILL:
        return ImageOps.fit(img, (spec.width, spec.height), Image.LANCZOS, centering=(0.5, 0.5))
    out = img.copy()
    out.thumbnail((spec.width, spec.height), Image.LANCZOS)
    return out


def encode_webp(img: Image.Image, quality: int) -> bytes:
    buffer = BytesIO()
    try:
        img.save(buffer, format="WEBP", quality=quality, method=6)
    except (OSError, ValueError) as exc:
        raise ProcessingError(f"Could not encode WebP: {exc}") from exc
    return buffer.getvalue()


def check_svg(data: bytes) -> None:
    if not _SVG_ROOT.search(data):
        raise ProcessingError("File is declared as SVG but has no <svg> root element")


def transform(data: bytes, mime_type: str, policy: AssetPolicy) -> List[Derivative]:
    """Produce every derivative ``policy`` asks for from ``data``.

    Args:
        data: Raw uploaded bytes.
        mime_type: Normalised declared MIME type of the upload.
        policy: Policy of the asset kind being processed.

    Returns:
        One ``Derivative`` per spec in the policy, in policy order. For a
        pass-through MIME type a single derivative holding the input bytes
        unchanged is returned.

    Raises:
        ProcessingError: If the bytes cannot be decoded or re-encoded.
    """
    if policy.is_passthrough(mime_type):
        check_svg(data)
        return [Derivative(label=policy.derivatives[0].label, data=data, format="svg")]

    img = _open_image(data)
    derivatives = []
    for spec in policy.derivatives:
        resized = resize(img, spec)
        derivatives.append(
            Derivative(
                label=spec.label,
                data=encode_webp(resized, spec.quality),
                format=policy.output_format,
                width=resized.width,
                height=resized.height,
            )
        )
    return derivatives
