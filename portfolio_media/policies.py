"""Per-kind upload policies.

A policy is the immutable rule set applied to one kind of uploaded image:
which MIME types are accepted, how large and how many files may be sent,
and which derivatives are produced from each accepted file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Tuple

MB = 1024 * 1024

JPEG_TYPES = frozenset({"image/jpeg", "image/jpg"})
RASTER_TYPES = JPEG_TYPES | {"image/png", "image/webp"}
SVG_TYPE = "image/svg+xml"


class AssetKind(str, Enum):
    COVER = "cover"
    PICTURE = "picture"
    ICON = "icon"
    AVATAR = "avatar"
    EXPERIENCE_PHOTO = "experience-photo"


class Fit(str, Enum):
    # Bound to the box, keep aspect ratio, never enlarge.
    INSIDE = "inside"
    # Scale and centre-crop to exactly width x height.
    FILL = "fill"


@dataclass(frozen=True)
class DerivativeSpec:
    label: str
    width: int
    height: int
    fit: Fit
    quality: int

    @property
    def size_label(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class AssetPolicy:
    kind: AssetKind
    allowed_mime_types: FrozenSet[str]
    max_file_size: int
    max_file_count: int
    output_format: str
    derivatives: Tuple[DerivativeSpec, ...]
    directory: str
    passthrough_mime_types: FrozenSet[str] = field(default_factory=frozenset)

    def allows(self, mime_type: str) -> bool:
        return mime_type in self.allowed_mime_types

    def is_passthrough(self, mime_type: str) -> bool:
        return mime_type in self.passthrough_mime_types

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(spec.label for spec in self.derivatives)


POLICIES: Dict[AssetKind, AssetPolicy] = {
    AssetKind.COVER: AssetPolicy(
        kind=AssetKind.COVER,
        allowed_mime_types=RASTER_TYPES,
        max_file_size=10 * MB,
        max_file_count=1,
        output_format="webp",
        derivatives=(
            DerivativeSpec("small", 400, 400, Fit.FILL, 85),
            DerivativeSpec("large", 1000, 1000, Fit.FILL, 92),
        ),
        directory="projects/covers",
    ),
    AssetKind.PICTURE: AssetPolicy(
        kind=AssetKind.PICTURE,
        allowed_mime_types=RASTER_TYPES,
        max_file_size=10 * MB,
        max_file_count=10,
        output_format="webp",
        derivatives=(DerivativeSpec("full", 1200, 1200, Fit.INSIDE, 85),),
        directory="projects/pictures",
    ),
    AssetKind.ICON: AssetPolicy(
        kind=AssetKind.ICON,
        allowed_mime_types=RASTER_TYPES | {SVG_TYPE},
        max_file_size=2 * MB,
        max_file_count=1,
        output_format="webp",
        derivatives=(DerivativeSpec("icon", 512, 512, Fit.INSIDE, 90),),
        directory="skills",
        passthrough_mime_types=frozenset({SVG_TYPE}),
    ),
    AssetKind.AVATAR: AssetPolicy(
        kind=AssetKind.AVATAR,
        allowed_mime_types=RASTER_TYPES | {"image/gif"},
        max_file_size=5 * MB,
        max_file_count=1,
        output_format="webp",
        derivatives=(DerivativeSpec("square", 400, 400, Fit.FILL, 90),),
        directory="avatars",
    ),
    AssetKind.EXPERIENCE_PHOTO: AssetPolicy(
        kind=AssetKind.EXPERIENCE_PHOTO,
        allowed_mime_types=RASTER_TYPES,
        max_file_size=5 * MB,
        max_file_count=1,
        output_format="webp",
        derivatives=(DerivativeSpec("square", 400, 400, Fit.FILL, 90),),
        directory="experiences",
    ),
}


def get_policy(kind: AssetKind | str) -> AssetPolicy:
    return POLICIES[AssetKind(kind)]
