"""Request objects and Pydantic schemas for the media API.

``UploadedFile`` and ``UploadRequest`` are the in-memory view of a multipart
request that the pipeline consumes. The Pydantic models describe JSON bodies
accepted and returned by the FastAPI endpoints.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def normalized_mime_type(self) -> str:
        return self.mime_type.split(";", 1)[0].strip().lower()


@dataclass
class UploadRequest:
    """All file slots of one upload request.

    Attributes:
        cover: Project cover image.
        pictures: Project gallery images.
        icon: Skill icon.
        avatar: User avatar.
        image: Experience photo.
        owner_hint: Optional id of the owning record, used only as a
            readable prefix for generated file names.
    """

    cover: Optional[UploadedFile] = None
    pictures: List[UploadedFile] = field(default_factory=list)
    icon: Optional[UploadedFile] = None
    avatar: Optional[UploadedFile] = None
    image: Optional[UploadedFile] = None
    owner_hint: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.cover or self.pictures or self.icon or self.avatar or self.image)


class CleanupRequest(BaseModel):
    files_to_keep: List[str] = Field(default_factory=list, alias="filesToKeep")
    min_age_seconds: Optional[int] = Field(default=None, alias="minAgeSeconds", ge=0)

    model_config = {"populate_by_name": True}


class DeleteAssetRequest(BaseModel):
    reference: str = Field(..., min_length=1)


class CoverUrls(BaseModel):
    """URLs of the two cover derivatives.

    Attributes:
        small: 400x400 derivative used on project cards.
        large: 1000x1000 derivative used on the project page.
    """

    small: str
    large: str


class PictureEntry(BaseModel):
    original: str
    url: str
    size: str


class FileErrorEntry(BaseModel):
    filename: str
    error: str
    code: str


class CleanupData(BaseModel):
    deletedFiles: List[str]
    keptFiles: List[str]
    failedFiles: List[str]
    totalDeleted: int
    totalKept: int
    bytesFreed: int
    spaceFreed: str


class CleanupResponse(BaseModel):
    success: bool = True
    message: str
    data: CleanupData


class JobResponse(BaseModel):
    job_id: str
    status: str


class JobStatusResponse(BaseModel):
    status: str
    result: Optional[Dict] = None
    error: Optional[str] = None
