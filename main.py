import logging
import traceback
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue

from portfolio_media.cleanup import Reconciler, format_size
from portfolio_media.config import Settings, configure_logging
from portfolio_media.errors import MediaError, NoFile, NotFound, QueueUnavailable
from portfolio_media.jobs import run_cleanup
from portfolio_media.models import (
    CleanupRequest,
    CleanupResponse,
    DeleteAssetRequest,
    JobResponse,
    JobStatusResponse,
    UploadedFile,
    UploadRequest,
)
from portfolio_media.pipeline import BatchStatus, KindOutcome, Pipeline
from portfolio_media.policies import AssetKind, get_policy
from portfolio_media.storage import LocalStorageClient, Store, StorageClient, build_storage_client

logger = logging.getLogger("portfolio_media.api")

router = APIRouter(prefix="/api/upload")
jobs_router = APIRouter(prefix="/api/jobs")


# --- Dependencies ---
def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_queue(request: Request) -> Queue:
    return request.app.state.queue


async def _read_upload(upload: Optional[UploadFile]) -> Optional[UploadedFile]:
    if upload is None or not upload.filename:
        return None
    try:
        data = await upload.read()
    finally:
        await upload.close()
    return UploadedFile(filename=upload.filename, mime_type=upload.content_type or "", data=data)


async def _read_uploads(uploads: Optional[List[UploadFile]]) -> List[UploadedFile]:
    """Read every part of a multi-file field.

    Parts without a filename are kept as empty files so validation reports
    them as ``NO_FILE`` and the batch totals match what the client sent.
    """
    files = []
    for upload in uploads or []:
        try:
            data = await upload.read()
        finally:
            await upload.close()
        files.append(UploadedFile(filename=upload.filename or "", mime_type=upload.content_type or "", data=data))
    return files


def _metadata(outcome: KindOutcome) -> dict:
    policy = get_policy(outcome.kind)
    done = outcome.files[0]
    metadata = {
        "originalName": done.filename,
        "originalSize": format_size(done.size),
        "processingTime": f"{outcome.elapsed_ms}ms",
        "outputFormat": done.output_format,
        "optimized": done.output_format != "svg",
    }
    if done.output_format != "svg":
        metadata["sizes"] = [spec.size_label for spec in policy.derivatives]
    if done.source is not None:
        metadata["source"] = {
            "format": done.source.format,
            "width": done.source.width,
            "height": done.source.height,
        }
    return metadata


def _picture_entries(outcome: KindOutcome) -> List[dict]:
    return [
        {"original": f.filename, "url": url, "size": format_size(f.size)}
        for f in outcome.files
        if f.ok
        for url in f.references.values()
    ]


# --- Upload Endpoints ---
@router.post("/project-cover")
async def upload_cover(
    cover: Optional[UploadFile] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    outcome = await pipeline.process_cover(await _read_upload(cover), owner_hint=id)
    outcome.raise_for_failure()
    return {
        "success": True,
        "message": "Cover uploaded",
        "cover": outcome.references(),
        "metadata": _metadata(outcome),
    }


@router.post("/project-pictures")
async def upload_pictures(
    pictures: Optional[List[UploadFile]] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    files = await _read_uploads(pictures)
    if not files:
        raise NoFile("No picture files provided")
    outcome = await pipeline.process_pictures(files, owner_hint=id)
    body = {
        "success": outcome.success_count > 0,
        "message": f"{outcome.success_count}/{outcome.submitted} image(s) uploaded",
        "pictures": _picture_entries(outcome),
        "metadata": {
            "totalFiles": outcome.submitted,
            "successCount": outcome.success_count,
            "errorCount": outcome.error_count,
            "status": outcome.status.value,
            "totalProcessingTime": f"{outcome.elapsed_ms}ms",
            "outputFormat": "webp",
            "size": get_policy(AssetKind.PICTURE).derivatives[0].size_label,
        },
    }
    if outcome.failures:
        body["errors"] = [failure.to_dict() for failure in outcome.failures]
    return JSONResponse(status_code=outcome.status.http_status, content=body)


@router.post("/project-images")
async def upload_project_images(
    cover: Optional[UploadFile] = File(None),
    pictures: Optional[List[UploadFile]] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Upload a project's cover and gallery pictures in one request.

    The cover is all-or-nothing, pictures succeed or fail one by one. The
    response status is 200 when everything was stored, 207 when only part
    of it was, and 400 when nothing was.
    """
    upload_request = UploadRequest(
        cover=await _read_upload(cover),
        pictures=await _read_uploads(pictures),
        owner_hint=id,
    )
    if upload_request.is_empty():
        raise NoFile("No cover or picture files provided")
    result = await pipeline.process(upload_request)
    cover_outcome = result.kinds.get(AssetKind.COVER)
    picture_outcome = result.kinds.get(AssetKind.PICTURE)
    body = {
        "success": result.status is not BatchStatus.FAILURE,
        "data": {
            "cover": cover_outcome.references() if cover_outcome else None,
            "pictures": _picture_entries(picture_outcome) if picture_outcome else [],
        },
        "metadata": {
            kind.value: {
                "totalFiles": outcome.submitted,
                "successCount": outcome.success_count,
                "errorCount": outcome.error_count,
                "status": outcome.status.value,
            }
            for kind, outcome in result.kinds.items()
        },
    }
    if result.failures:
        body["errors"] = [failure.to_dict() for failure in result.failures]
    return JSONResponse(status_code=result.status.http_status, content=body)


@router.post("/skill-icon")
async def upload_skill_icon(
    icon: Optional[UploadFile] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    outcome = await pipeline.process_single(AssetKind.ICON, await _read_upload(icon), owner_hint=id)
    outcome.raise_for_failure()
    return {
        "success": True,
        "message": "Icon uploaded",
        "icon": outcome.references(),
        "metadata": _metadata(outcome),
    }


@router.post("/avatar")
async def upload_avatar(
    avatar: Optional[UploadFile] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    outcome = await pipeline.process_single(AssetKind.AVATAR, await _read_upload(avatar), owner_hint=id)
    outcome.raise_for_failure()
    return {
        "success": True,
        "message": "Avatar uploaded",
        "data": {"avatar": outcome.references()},
        "metadata": _metadata(outcome),
    }


@router.post("/experience-image")
async def upload_experience_image(
    image: Optional[UploadFile] = File(None),
    id: Optional[str] = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    outcome = await pipeline.process_single(
        AssetKind.EXPERIENCE_PHOTO, await _read_upload(image), owner_hint=id
    )
    outcome.raise_for_failure()
    return {
        "success": True,
        "message": "Image uploaded",
        "data": {"image": outcome.references()},
        "metadata": _metadata(outcome),
    }


@router.delete("/asset")
async def delete_asset(body: DeleteAssetRequest, store: Store = Depends(get_store)):
    """Delete one stored asset, typically when its owning record is removed."""
    deleted = await run_in_threadpool(store.delete, body.reference)
    return {"success": True, "deleted": deleted, "reference": store.client.normalize(body.reference)}


# --- Cleanup Endpoints ---
@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(body: CleanupRequest, reconciler: Reconciler = Depends(get_reconciler)):
    """Delete every stored asset that is not listed in ``filesToKeep``.

    ``filesToKeep`` must hold every reference currently stored on owning
    records, queried right before this call. Anything not listed is
    deleted permanently.
    """
    report = await run_in_threadpool(reconciler.reconcile, body.files_to_keep, body.min_age_seconds)
    return {"success": True, "message": "Cleanup completed", "data": report.to_dict()}


@router.post("/cleanup/jobs", response_model=JobResponse, status_code=202)
async def enqueue_cleanup(body: CleanupRequest, queue: Queue = Depends(get_queue)):
    try:
        job = queue.enqueue(
            run_cleanup,
            kwargs={"files_to_keep": body.files_to_keep, "min_age_seconds": body.min_age_seconds},
        )
    except RedisError as exc:
        raise QueueUnavailable(f"Job queue not reachable: {exc}") from exc
    return {"job_id": job.id, "status": job.get_status(refresh=False)}


@jobs_router.get("/{job_id}", response_model=JobStatusResponse)
async def job_status(job_id: str, queue: Queue = Depends(get_queue)):
    try:
        job = queue.fetch_job(job_id)
    except RedisError as exc:
        raise QueueUnavailable(f"Job queue not reachable: {exc}") from exc
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    error = None
    if job.is_failed:
        latest = job.latest_result()
        error = latest.exc_string if latest is not None else None
    return {
        "status": job.get_status(refresh=False),
        "result": job.return_value() if job.is_finished else None,
        "error": error,
    }


# --- App Init ---
def create_app(
    settings: Optional[Settings] = None,
    storage_client: Optional[StorageClient] = None,
    queue: Optional[Queue] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    client = storage_client or build_storage_client(settings)
    client.ensure_root()
    store = Store(client)

    app = FastAPI(title="Portfolio media API")
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = Pipeline(store)
    app.state.reconciler = Reconciler(client, grace_seconds=settings.cleanup_grace_seconds)
    app.state.queue = queue or Queue(
        settings.rq_queue,
        connection=Redis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Derivative names are never reused, so served files can be cached forever.
    if isinstance(client, LocalStorageClient) and client.url_prefix:
        app.mount(client.url_prefix, StaticFiles(directory=str(client.root)), name="uploads")

        @app.middleware("http")
        async def add_cache_control_header(request: Request, call_next):
            response = await call_next(request)
            if request.url.path.startswith(client.url_prefix + "/") and response.status_code == 200:
                response.headers["Cache-Control"] = "public, max-age=604800, immutable"
            return response

    @app.exception_handler(MediaError)
    async def media_error_handler(request: Request, exc: MediaError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        content = {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}
        if not settings.is_production:
            content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=content)

    @app.get("/health")
    async def health():
        return {"status": "ok", "storage": client.name}

    app.include_router(router)
    app.include_router(jobs_router)
    logger.info("Media API ready (storage=%s, environment=%s)", client.name, settings.environment)
    return app


app = create_app()
