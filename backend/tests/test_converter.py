import asyncio

import pytest
from PIL import Image

from app.cleanup import CleanupScheduler
from app.conversion.codec import ImageInfo
from app.conversion.models import ConversionOptions, FitMode, ImageFormat, SourceFile
from app.conversion.service import ConversionService
from app.errors import ConversionTimeoutError, PathSafetyError, ProcessingError, ResourceLimitError

from conftest import SpyCodec, files_in, make_image, png_header, wait_until


def options(**kwargs) -> ConversionOptions:
    kwargs.setdefault("format", "webp")
    return ConversionOptions.model_validate(kwargs)


def source(path, name=None) -> SourceFile:
    return SourceFile(path=path, original_name=name or path.name, size=path.stat().st_size)


def make_service(dirs, **kwargs) -> ConversionService:
    return ConversionService(
        upload_dir=dirs.uploads,
        output_dir=dirs.output,
        cleanup=CleanupScheduler(dirs.root),
        **kwargs,
    )


def test_width_only_keeps_aspect(dirs, service):
    src = make_image(dirs.uploads / "photo.png", size=(1600, 1200))
    result = service.convert(source(src), options(format="webp", quality=85, width=800, maintainAspectRatio=True))
    assert (result.width, result.height) == (800, 600)
    assert result.output_path.parent == dirs.output
    assert result.output_path.name.startswith("photo_800x600_")
    assert result.output_path.suffix == ".webp"
    with Image.open(result.output_path) as img:
        assert img.format == "WEBP"
        assert img.size == (800, 600)


@pytest.mark.parametrize("fmt", list(ImageFormat))
def test_every_format_hits_target_size(dirs, service, fmt):
    src = make_image(dirs.uploads / "pic.png", size=(300, 200), mode="RGBA")
    result = service.convert(source(src), options(format=fmt.value, width=151))
    assert abs(result.width - 151) <= 1
    assert abs(result.height - 101) <= 1
    with Image.open(result.output_path) as img:
        assert img.format == fmt.value.upper()


def test_no_resize_requested_keeps_original_size(dirs, service):
    src = make_image(dirs.uploads / "same.jpg", size=(320, 240), fmt="JPEG")
    result = service.convert(source(src), options(format="png"))
    assert (result.width, result.height) == (320, 240)


def test_contain_fit_without_aspect(dirs, service):
    src = make_image(dirs.uploads / "wide.png", size=(200, 100))
    result = service.convert(source(src), options(format="png", width=100, height=100, maintainAspectRatio=False))
    assert (result.width, result.height) == (100, 100)


def test_traversal_path_never_reaches_codec(dirs, tmp_path):
    outside = make_image(tmp_path / "secret.png")
    codec = SpyCodec()
    svc = make_service(dirs, codec=codec)
    crafted = SourceFile(path=dirs.uploads / ".." / ".." / "secret.png", original_name="../../secret.png")
    with pytest.raises(PathSafetyError) as exc_info:
        svc.convert(crafted, options())
    assert exc_info.value.status_code == 403
    assert codec.encoded == []
    assert outside.exists()
    svc.shutdown()


def test_oversized_dimensions_rejected_before_resize(dirs):
    src = make_image(dirs.uploads / "huge.png")
    codec = SpyCodec(source_info=ImageInfo(9000, 9000, "PNG"))
    svc = make_service(dirs, codec=codec)
    with pytest.raises(ResourceLimitError) as exc_info:
        svc.convert(source(src), options(width=100))
    assert exc_info.value.status_code == 413
    assert exc_info.value.code == "DIMENSION_LIMIT_EXCEEDED"
    assert "4000x4000" in exc_info.value.message
    assert codec.encoded == []
    assert files_in(dirs.output) == []
    svc.shutdown()


def test_header_beyond_decoder_limit_is_a_dimension_error(dirs, service):
    huge = dirs.uploads / "huge.png"
    huge.write_bytes(png_header(20000, 20000))
    with pytest.raises(ResourceLimitError) as exc_info:
        service.convert(source(huge), options())
    assert exc_info.value.status_code == 413
    assert exc_info.value.code == "DIMENSION_LIMIT_EXCEEDED"
    assert exc_info.value.details["maxWidth"] == 4000
    assert files_in(dirs.output) == []


def test_pixel_count_limit(dirs):
    src = make_image(dirs.uploads / "square.png", size=(40, 40))
    svc = make_service(dirs, max_pixels=1000)
    with pytest.raises(ResourceLimitError) as exc_info:
        svc.convert(source(src), options())
    assert exc_info.value.code == "PIXEL_LIMIT_EXCEEDED"
    svc.shutdown()


def test_large_inputs_get_a_quality_cap(dirs):
    src = make_image(dirs.uploads / "big.png")
    codec = SpyCodec()
    svc = make_service(dirs, codec=codec, large_file_threshold=10)
    svc.convert(source(src), options(format="jpeg", quality=95))
    assert codec.encoded[0][2] == 70
    svc.shutdown()


def test_effective_quality(service):
    assert service.effective_quality(90, 1024) == 90
    assert service.effective_quality(90, 5 * 1024 * 1024) == 70
    assert service.effective_quality(50, 5 * 1024 * 1024) == 50


def test_aspect_kept_uses_plain_resize(dirs):
    src = make_image(dirs.uploads / "p.png", size=(400, 300))
    codec = SpyCodec()
    svc = make_service(dirs, codec=codec)
    svc.convert(source(src), options(format="png", width=200, fit="cover"))
    assert codec.encoded[0][5] == FitMode.FILL
    svc.shutdown()


def test_corrupt_input_is_a_processing_error(dirs, service):
    bad = dirs.uploads / "broken.png"
    bad.write_bytes(b"definitely not a png")
    with pytest.raises(ProcessingError) as exc_info:
        service.convert(source(bad), options())
    assert exc_info.value.status_code == 500
    assert files_in(dirs.output) == []


def test_codec_failure_removes_partial_output(dirs):
    src = make_image(dirs.uploads / "bad-frame.png")
    svc = make_service(dirs, codec=SpyCodec(fail_when="bad", partial_output=True))
    with pytest.raises(ProcessingError):
        svc.convert(source(src), options())
    assert files_in(dirs.output) == []
    svc.shutdown()


def test_slow_conversion_times_out_and_discards_late_output(dirs):
    src = make_image(dirs.uploads / "slow.png")
    svc = make_service(dirs, codec=SpyCodec(delay=0.5), timeout=0.1)
    with pytest.raises(ConversionTimeoutError) as exc_info:
        asyncio.run(svc.convert_async(source(src), options()))
    assert exc_info.value.status_code == 408
    assert exc_info.value.code == "PROCESSING_TIMEOUT"
    # the worker finishes after the caller gave up; its output must not survive
    assert wait_until(lambda: svc.codec.finished and files_in(dirs.output) == [])
    svc.shutdown()


def test_convert_many_preserves_upload_order(dirs, service):
    sizes = [(300, 100), (50, 50), (120, 240)]
    sources = [source(make_image(dirs.uploads / f"img{i}.png", size=s)) for i, s in enumerate(sizes)]
    results = asyncio.run(service.convert_many(sources, options(format="png")))
    assert [r.source.original_name for r in results] == ["img0.png", "img1.png", "img2.png"]
    assert [(r.width, r.height) for r in results] == sizes


def test_convert_many_waits_for_all_and_reports_first_failure(dirs):
    svc = make_service(dirs, codec=SpyCodec(fail_when="bad"))
    sources = [
        source(make_image(dirs.uploads / "good1.png")),
        source(make_image(dirs.uploads / "bad.png")),
        source(make_image(dirs.uploads / "good2.png")),
    ]
    written = []
    with pytest.raises(ProcessingError) as exc_info:
        asyncio.run(svc.convert_many(sources, options(), on_output=written.append))
    assert exc_info.value.details["file"] == "bad.png"
    assert len(written) == 2
    assert sorted(p.name for p in written) == files_in(dirs.output)
    svc.shutdown()


def test_busy_worker_does_not_count_against_the_next_file(dirs):
    svc = make_service(dirs, codec=SpyCodec(delay=0.8, slow_when="slow"), timeout=0.3, concurrency=1)
    slow = source(make_image(dirs.uploads / "slow.png"))
    fast = source(make_image(dirs.uploads / "fast.png"))
    with pytest.raises(ConversionTimeoutError):
        asyncio.run(svc.convert_async(slow, options()))
    # the only worker is still stuck on slow.png; fast.png waits for it, then gets its full timeout
    result = asyncio.run(svc.convert_async(fast, options()))
    assert result.source.original_name == "fast.png"
    svc.shutdown()


def test_later_files_in_a_batch_wait_for_the_stuck_worker(dirs):
    codec = SpyCodec(delay=0.6, slow_when="slow")
    svc = make_service(dirs, codec=codec, timeout=0.2, concurrency=1)
    sources = [source(make_image(dirs.uploads / n)) for n in ("slow.png", "fast.png")]
    with pytest.raises(ConversionTimeoutError) as exc_info:
        asyncio.run(svc.convert_many(sources, options()))
    assert exc_info.value.details["file"] == "slow.png"
    # fast.png only started once slow.png had released the worker
    assert [name for name, *_ in codec.encoded] == ["slow.png", "fast.png"]
    svc.shutdown()
