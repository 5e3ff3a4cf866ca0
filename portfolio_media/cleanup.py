"""Orphaned asset cleanup.

The reconciler walks every object in storage and deletes those that are not
in the caller's keep set. The keep set must be computed from all owning
records immediately before calling ``reconcile``; anything missing from it
is deleted for good.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .errors import MediaError
from .storage import StorageClient

logger = logging.getLogger(__name__)

_UNITS = ("B", "KB", "MB", "GB")


def format_size(num_bytes: int) -> str:
    """Human readable size in binary units, e.g. ``1.5 KB``."""
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(_UNITS) - 1:
        value /= 1024
        exponent += 1
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {_UNITS[exponent]}"


@dataclass
class CleanupReport:
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    bytes_freed: int = 0

    @property
    def space_freed(self) -> str:
        return format_size(self.bytes_freed)

    def to_dict(self) -> dict:
        return {
            "deletedFiles": self.deleted,
            "keptFiles": self.kept,
            "failedFiles": self.failed,
            "totalDeleted": len(self.deleted),
            "totalKept": len(self.kept),
            "bytesFreed": self.bytes_freed,
            "spaceFreed": self.space_freed,
        }


class Reconciler:
    def __init__(self, client: StorageClient, grace_seconds: int = 0) -> None:
        self.client = client
        self.grace_seconds = grace_seconds

    def reconcile(self, keep_set: Iterable[str], min_age_seconds: Optional[int] = None) -> CleanupReport:
        """Delete every stored asset whose reference is not in ``keep_set``.

        Args:
            keep_set: References still reachable from owning records, in any
                spelling ``StorageClient.normalize`` understands.
            min_age_seconds: Assets modified more recently than this are kept
                even when unreferenced. Defaults to the configured grace
                period.

        Raises:
            NotFound: If the uploads root does not exist.
        """
        grace = self.grace_seconds if min_age_seconds is None else min_age_seconds
        keep = {self.client.normalize(ref) for ref in keep_set if ref and ref.strip()}
        cutoff = time.time() - grace
        report = CleanupReport()

        logger.info("Cleanup started: %d reference(s) to keep, grace %ss", len(keep), grace)
        for obj in self.client.iter_objects():
            reference = obj.reference
            if reference in keep or (grace and obj.modified > cutoff):
                report.kept.append(reference)
                continue
            try:
                deleted = self.client.delete_object(obj)
            except MediaError as exc:
                logger.error("Could not delete %s: %s", reference, exc)
                report.failed.append(reference)
                continue
            if not deleted:
                logger.debug("Orphan %s was already gone", reference)
                continue
            report.deleted.append(reference)
            report.bytes_freed += obj.size
            logger.info("Deleted orphan %s", reference)

        logger.info(
            "Cleanup finished: %d deleted, %d kept, %d failed, %s freed",
            len(report.deleted),
            len(report.kept),
            len(report.failed),
            report.space_freed,
        )
        return report
