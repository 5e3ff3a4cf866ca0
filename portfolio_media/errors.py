"""Error taxonomy for the media pipeline.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer should answer with. Batch operations catch these per file and record
them in the pipeline result; single-file operations let them propagate to
the exception handler registered in ``main.py``.
"""

from __future__ import annotations


class MediaError(Exception):
    """Base class for all pipeline errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, filename: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.filename = filename

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.message, "code": self.code}
        if self.filename:
            payload["filename"] = self.filename
        return payload


class Rejected(MediaError):
    """A file failed validation before any processing happened."""

    status_code = 400


class NoFile(Rejected):
    code = "NO_FILE"


class UnsupportedType(Rejected):
    code = "INVALID_MIME_TYPE"


class FileTooLarge(Rejected):
    code = "FILE_TOO_LARGE"


class TooManyFiles(Rejected):
    code = "TOO_MANY_FILES"


class ProcessingError(MediaError):
    """The image could not be decoded or re-encoded."""

    code = "PROCESSING_ERROR"
    status_code = 422


class StoreError(MediaError):
    """Writing or deleting a stored asset failed."""

    code = "SAVE_ERROR"
    status_code = 500


class NotFound(MediaError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidReference(Rejected):
    """A reference points outside the uploads root or bucket prefix."""

    code = "INVALID_REFERENCE"


class QueueUnavailable(MediaError):
    code = "QUEUE_UNAVAILABLE"
    status_code = 503
