"""Upload validation against per-kind policies.

These checks are pure: they only look at the declared MIME type and the
buffer length, and they never touch storage.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from .errors import FileTooLarge, NoFile, TooManyFiles, UnsupportedType
from .models import UploadedFile
from .policies import AssetPolicy


def _format_mb(size: int) -> str:
    return f"{size / (1024 * 1024):.1f}MB"


def validate(file: UploadedFile, policy: AssetPolicy) -> None:
    """Raise a ``Rejected`` subclass if ``file`` breaks ``policy``."""
    if not file.filename:
        raise NoFile("File part has no filename")
    if file.size == 0:
        raise NoFile(f"File '{file.filename}' is empty", filename=file.filename)
    mime_type = file.normalized_mime_type
    if not policy.allows(mime_type):
        allowed = ", ".join(sorted(policy.allowed_mime_types))
        raise UnsupportedType(
            f"File type '{mime_type or 'unknown'}' is not allowed for {policy.kind.value} (allowed: {allowed})",
            filename=file.filename,
        )
    if file.size > policy.max_file_size:
        raise FileTooLarge(
            f"File is too large: {_format_mb(file.size)} ({_format_mb(policy.max_file_size)} maximum)",
            filename=file.filename,
        )


def split_batch(
    files: Sequence[UploadedFile], policy: AssetPolicy
) -> Tuple[List[UploadedFile], List[Tuple[UploadedFile, TooManyFiles]]]:
    """Separate the files a batch may process from the excess ones.

    Files beyond ``policy.max_file_count`` are rejected one by one; the
    first ``max_file_count`` files are still processed.
    """
    accepted = list(files[: policy.max_file_count])
    excess = [
        (
            file,
            TooManyFiles(
                f"At most {policy.max_file_count} file(s) allowed for {policy.kind.value}",
                filename=file.filename,
            ),
        )
        for file in files[policy.max_file_count:]
    ]
    return accepted, excess
