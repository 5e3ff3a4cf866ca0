"""Upload pipeline orchestration.

Each uploaded file moves through ``received -> validated -> transformed ->
stored -> done`` or stops at ``rejected`` / ``failed``. Outcomes are
recorded per file so one bad picture never takes its siblings down, while a
cover is all-or-nothing: if any of its derivatives cannot be produced or
stored, the ones already written are deleted again.

Decoding, resizing and storage writes are blocking, so they run on the
thread pool instead of the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from fastapi.concurrency import run_in_threadpool

from .errors import MediaError, NoFile, ProcessingError, Rejected, StoreError
from .image_ops import Derivative, ImageInfo, probe, transform
from .models import UploadedFile, UploadRequest
from .policies import POLICIES, AssetKind, AssetPolicy
from .storage import Store, StoredAsset
from .validation import split_batch, validate

logger = logging.getLogger(__name__)


class FileState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    TRANSFORMED = "transformed"
    STORED = "stored"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


class BatchStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"

    @property
    def http_status(self) -> int:
        return {BatchStatus.SUCCESS: 200, BatchStatus.PARTIAL: 207, BatchStatus.FAILURE: 400}[self]


@dataclass
class FileFailure:
    filename: str
    reason: str
    code: str

    def to_dict(self) -> dict:
        return {"filename": self.filename, "error": self.reason, "code": self.code}


@dataclass
class FileOutcome:
    filename: str
    size: int
    state: FileState = FileState.RECEIVED
    references: Dict[str, str] = field(default_factory=dict)
    source: Optional[ImageInfo] = None
    output_format: Optional[str] = None
    error: Optional[MediaError] = None

    @property
    def ok(self) -> bool:
        return self.state is FileState.DONE

    def fail(self, state: FileState, error: MediaError) -> "FileOutcome":
        self.state = state
        self.error = error
        self.references = {}
        return self

    def failure(self) -> FileFailure:
        return FileFailure(self.filename, self.error.message, self.error.code)


@dataclass
class KindOutcome:
    kind: AssetKind
    files: List[FileOutcome] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def submitted(self) -> int:
        return len(self.files)

    @property
    def success_count(self) -> int:
        return sum(1 for f in self.files if f.ok)

    @property
    def error_count(self) -> int:
        return self.submitted - self.success_count

    @property
    def failures(self) -> List[FileFailure]:
        return [f.failure() for f in self.files if not f.ok]

    @property
    def status(self) -> BatchStatus:
        if self.submitted and self.success_count == self.submitted:
            return BatchStatus.SUCCESS
        if self.success_count:
            return BatchStatus.PARTIAL
        return BatchStatus.FAILURE

    def references(self) -> Union[Dict[str, str], List[str], str, None]:
        """References in the shape owning records store them.

        Covers give their labeled pair, pictures a list, every other kind a
        single reference string.
        """
        done = [f for f in self.files if f.ok]
        if self.kind is AssetKind.PICTURE:
            return [ref for f in done for ref in f.references.values()]
        if not done:
            return None
        if self.kind is AssetKind.COVER:
            return dict(done[0].references)
        return next(iter(done[0].references.values()))

    def raise_for_failure(self) -> None:
        """Re-raise the error of a failed single-file kind."""
        for f in self.files:
            if not f.ok:
                raise f.error


@dataclass
class PipelineResult:
    kinds: Dict[AssetKind, KindOutcome] = field(default_factory=dict)

    @property
    def failures(self) -> List[FileFailure]:
        return [failure for outcome in self.kinds.values() for failure in outcome.failures]

    @property
    def status(self) -> BatchStatus:
        statuses = {outcome.status for outcome in self.kinds.values()}
        if not statuses or statuses == {BatchStatus.FAILURE}:
            return BatchStatus.FAILURE
        if statuses == {BatchStatus.SUCCESS}:
            return BatchStatus.SUCCESS
        return BatchStatus.PARTIAL

    def references(self) -> dict:
        return {kind.value: outcome.references() for kind, outcome in self.kinds.items()}


def _base_name(kind: AssetKind, owner_hint: Optional[str]) -> str:
    return f"{owner_hint}_{kind.value}" if owner_hint else kind.value


def _render(data: bytes, mime_type: str, policy: AssetPolicy) -> Tuple[List[Derivative], Optional[ImageInfo]]:
    derivatives = transform(data, mime_type, policy)
    info = None if policy.is_passthrough(mime_type) else probe(data)
    return derivatives, info


class Pipeline:
    def __init__(self, store: Store, policies: Optional[Dict[AssetKind, AssetPolicy]] = None) -> None:
        self.store = store
        self.policies = policies or POLICIES

    async def process_file(self, file: UploadedFile, kind: AssetKind, owner_hint: Optional[str] = None) -> FileOutcome:
        policy = self.policies[kind]
        outcome = FileOutcome(filename=file.filename, size=file.size)
        try:
            validate(file, policy)
        except Rejected as exc:
            logger.warning("Rejected %s for %s: %s", file.filename, kind.value, exc.message)
            return outcome.fail(FileState.REJECTED, exc)
        outcome.state = FileState.VALIDATED

        try:
            derivatives, outcome.source = await run_in_threadpool(
                _render, file.data, file.normalized_mime_type, policy
            )
        except ProcessingError as exc:
            exc.filename = file.filename
            logger.warning("Could not process %s: %s", file.filename, exc.message)
            return outcome.fail(FileState.FAILED, exc)
        outcome.state = FileState.TRANSFORMED
        outcome.output_format = derivatives[0].format

        stored: List[StoredAsset] = []
        base_name = _base_name(kind, owner_hint)
        try:
            for derivative in derivatives:
                asset = await run_in_threadpool(
                    self.store.store,
                    derivative.data,
                    policy.directory,
                    base_name,
                    derivative.label,
                    derivative.extension,
                    derivative.content_type,
                )
                stored.append(asset)
                outcome.references[derivative.label] = asset.resolve()
        except StoreError as exc:
            exc.filename = file.filename
            logger.error("Could not store %s: %s", file.filename, exc.message)
            await run_in_threadpool(self.store.discard, stored)
            return outcome.fail(FileState.FAILED, exc)
        except Exception:
            await run_in_threadpool(self.store.discard, stored)
            raise
        outcome.state = FileState.STORED

        outcome.state = FileState.DONE
        return outcome

    async def _single(self, kind: AssetKind, file: Optional[UploadedFile], owner_hint: Optional[str]) -> KindOutcome:
        started = time.perf_counter()
        result = KindOutcome(kind=kind)
        if file is None:
            missing = FileOutcome(filename="", size=0)
            result.files.append(missing.fail(FileState.REJECTED, NoFile(f"No {kind.value} file provided")))
            return result
        logger.info("Processing %s upload %s (%s, %d bytes)", kind.value, file.filename, file.mime_type, file.size)
        result.files.append(await self.process_file(file, kind, owner_hint))
        result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info("%s %s in %dms", kind.value, result.status.value, result.elapsed_ms)
        return result

    async def process_cover(self, file: Optional[UploadedFile], owner_hint: Optional[str] = None) -> KindOutcome:
        """Produce the small and large cover derivatives, both or neither."""
        return await self._single(AssetKind.COVER, file, owner_hint)

    async def process_single(
        self, kind: AssetKind, file: Optional[UploadedFile], owner_hint: Optional[str] = None
    ) -> KindOutcome:
        return await self._single(kind, file, owner_hint)

    async def process_pictures(
        self, files: Sequence[UploadedFile], owner_hint: Optional[str] = None
    ) -> KindOutcome:
        started = time.perf_counter()
        policy = self.policies[AssetKind.PICTURE]
        accepted, excess = split_batch(files, policy)
        logger.info("Processing %d picture(s), %d over the limit", len(accepted), len(excess))

        processed = await asyncio.gather(
            *(self.process_file(file, AssetKind.PICTURE, owner_hint) for file in accepted)
        )
        result = KindOutcome(kind=AssetKind.PICTURE, files=list(processed))
        for file, error in excess:
            result.files.append(FileOutcome(filename=file.filename, size=file.size).fail(FileState.REJECTED, error))

        result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Pictures: %d/%d succeeded in %dms", result.success_count, result.submitted, result.elapsed_ms
        )
        return result

    async def process(self, request: UploadRequest) -> PipelineResult:
        """Run every non-empty slot of ``request`` through the pipeline."""
        result = PipelineResult()
        hint = request.owner_hint
        if request.cover is not None:
            result.kinds[AssetKind.COVER] = await self.process_cover(request.cover, hint)
        if request.pictures:
            result.kinds[AssetKind.PICTURE] = await self.process_pictures(request.pictures, hint)
        if request.icon is not None:
            result.kinds[AssetKind.ICON] = await self.process_single(AssetKind.ICON, request.icon, hint)
        if request.avatar is not None:
            result.kinds[AssetKind.AVATAR] = await self.process_single(AssetKind.AVATAR, request.avatar, hint)
        if request.image is not None:
            result.kinds[AssetKind.EXPERIENCE_PHOTO] = await self.process_single(
                AssetKind.EXPERIENCE_PHOTO, request.image, hint
            )
        return result
