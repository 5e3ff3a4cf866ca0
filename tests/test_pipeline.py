import pytest

from conftest import SVG_ICON, make_image, open_image, stored_files
from portfolio_media.errors import NoFile, StoreError
from portfolio_media.models import UploadedFile, UploadRequest
from portfolio_media.pipeline import BatchStatus, FileState, Pipeline
from portfolio_media.policies import AssetKind
from portfolio_media.storage import Store

pytestmark = pytest.mark.anyio


def _jpeg(name="photo.jpg", width=640, height=480):
    return UploadedFile(filename=name, mime_type="image/jpeg", data=make_image(width, height))


class FailingStore(Store):
    """Fails whenever a derivative with the given label is written."""

    def __init__(self, client, failing_label):
        super().__init__(client)
        self.failing_label = failing_label

    def store(self, data, kind_dir, base_name, label, extension=".webp", content_type="image/webp"):
        if label == self.failing_label:
            raise StoreError("disk full")
        return super().store(data, kind_dir, base_name, label, extension, content_type)


async def test_cover_stores_both_derivatives(pipeline, local_client):
    outcome = await pipeline.process_cover(_jpeg(width=3000, height=3000), owner_hint="project-7")
    assert outcome.status is BatchStatus.SUCCESS
    refs = outcome.references()
    assert set(refs) == {"small", "large"}
    assert refs["small"].startswith("/uploads/projects/covers/project-7_cover-small-")
    sizes = [open_image(local_client.path_for(refs[label]).read_bytes()).size for label in ("small", "large")]
    assert sizes == [(400, 400), (1000, 1000)]


async def test_cover_is_never_half_published(local_client, uploads_dir):
    pipeline = Pipeline(FailingStore(local_client, failing_label="large"))
    outcome = await pipeline.process_cover(_jpeg())
    (file_outcome,) = outcome.files
    assert file_outcome.state is FileState.FAILED
    assert file_outcome.references == {}
    assert outcome.references() is None
    assert stored_files(uploads_dir) == []
    with pytest.raises(StoreError):
        outcome.raise_for_failure()


async def test_missing_single_file_is_reported(pipeline):
    outcome = await pipeline.process_single(AssetKind.ICON, None)
    assert outcome.status is BatchStatus.FAILURE
    with pytest.raises(NoFile):
        outcome.raise_for_failure()


async def test_picture_batch_partial_success(pipeline, uploads_dir):
    files = [
        _jpeg("a.jpg"),
        UploadedFile(filename="notes.txt", mime_type="text/plain", data=b"hello"),
        UploadedFile(filename="broken.jpg", mime_type="image/jpeg", data=b"\xff\xd8garbage"),
        _jpeg("b.jpg", 2400, 1600),
    ]
    outcome = await pipeline.process_pictures(files)
    assert outcome.submitted == 4
    assert outcome.success_count == 2
    assert outcome.error_count == 2
    assert outcome.success_count + outcome.error_count == outcome.submitted
    assert outcome.status is BatchStatus.PARTIAL
    assert outcome.status.http_status == 207
    assert {f.code for f in outcome.failures} == {"INVALID_MIME_TYPE", "PROCESSING_ERROR"}
    assert len(stored_files(uploads_dir)) == 2
    assert len(outcome.references()) == 2


async def test_picture_batch_statuses(pipeline):
    all_good = await pipeline.process_pictures([_jpeg("a.jpg"), _jpeg("b.jpg")])
    assert all_good.status is BatchStatus.SUCCESS
    assert all_good.status.http_status == 200

    bad = UploadedFile(filename="x.gif", mime_type="image/gif", data=make_image(10, 10, fmt="GIF"))
    all_bad = await pipeline.process_pictures([bad, bad])
    assert all_bad.status is BatchStatus.FAILURE
    assert all_bad.status.http_status == 400
    assert all_bad.references() == []


async def test_picture_batch_over_limit_rejects_only_excess(pipeline):
    files = [_jpeg(f"p{i}.jpg", 64, 64) for i in range(11)]
    outcome = await pipeline.process_pictures(files)
    assert outcome.submitted == 11
    assert outcome.success_count == 10
    assert [f.code for f in outcome.failures] == ["TOO_MANY_FILES"]
    assert outcome.status is BatchStatus.PARTIAL


async def test_svg_icon_is_stored_byte_identical(pipeline, local_client):
    icon = UploadedFile(filename="python.svg", mime_type="image/svg+xml", data=SVG_ICON)
    outcome = await pipeline.process_single(AssetKind.ICON, icon)
    reference = outcome.references()
    assert reference.endswith(".svg")
    assert local_client.path_for(reference).read_bytes() == SVG_ICON


async def test_raster_icon_becomes_webp(pipeline, local_client):
    icon = UploadedFile(filename="logo.png", mime_type="image/png", data=make_image(1024, 512, fmt="PNG"))
    outcome = await pipeline.process_single(AssetKind.ICON, icon)
    img = open_image(local_client.path_for(outcome.references()).read_bytes())
    assert img.format == "WEBP"
    assert img.size == (512, 256)


async def test_process_runs_every_slot(pipeline):
    request = UploadRequest(
        cover=_jpeg("cover.jpg"),
        pictures=[_jpeg("p1.jpg"), UploadedFile(filename="p2.jpg", mime_type="image/jpeg", data=b"junk")],
        avatar=_jpeg("me.jpg", 300, 500),
        image=_jpeg("company.jpg"),
    )
    result = await pipeline.process(request)
    assert set(result.kinds) == {
        AssetKind.COVER,
        AssetKind.PICTURE,
        AssetKind.AVATAR,
        AssetKind.EXPERIENCE_PHOTO,
    }
    assert result.status is BatchStatus.PARTIAL
    assert [f.filename for f in result.failures] == ["p2.jpg"]
    refs = result.references()
    assert set(refs["cover"]) == {"small", "large"}
    assert refs["avatar"].startswith("/uploads/avatars/")
    assert refs["experience-photo"].startswith("/uploads/experiences/")


async def test_unnamed_part_counts_as_missing_file(pipeline):
    unnamed = UploadedFile(filename="", mime_type="application/octet-stream", data=b"")
    outcome = await pipeline.process_pictures([_jpeg("a.jpg"), unnamed])
    assert outcome.submitted == 2
    assert outcome.success_count == 1
    assert [f.code for f in outcome.failures] == ["NO_FILE"]
    assert outcome.status is BatchStatus.PARTIAL
