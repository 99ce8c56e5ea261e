import io
import struct
import time
import zlib
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.archive import ArchiveBuilder
from app.cleanup import CleanupScheduler
from app.conversion.codec import ImageInfo, PillowCodec
from app.conversion.service import ConversionService
from app.main import app
from app.pipeline import ConversionPipeline, get_pipeline
from app.quota import QuotaTracker, RateLimiter


def make_image(path: Path, size=(64, 48), fmt="PNG", mode="RGB", color=(200, 30, 30)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode == "RGBA" and len(color) == 3:
        color = color + (255,)
    Image.new(mode, size, color).save(path, format=fmt)
    return path


def image_bytes(size=(64, 48), fmt="PNG", mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, (10, 120, 200)).save(buf, format=fmt)
    return buf.getvalue()


def png_header(width: int, height: int) -> bytes:
    """A PNG whose header claims ``width`` x ``height``; no real pixel data follows."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


def files_in(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


def wait_until(predicate, timeout=3.0, interval=0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class SpyCodec(PillowCodec):
    """Real Pillow codec that records calls and can fake source metadata, fail or stall."""

    def __init__(
        self,
        source_info: Optional[ImageInfo] = None,
        fail_when: Optional[str] = None,
        partial_output: bool = False,
        delay: float = 0.0,
        slow_when: Optional[str] = None,
    ):
        self.source_info = source_info
        self.fail_when = fail_when
        self.partial_output = partial_output
        self.delay = delay
        self.slow_when = slow_when
        self.encoded: list[tuple] = []
        self.outputs: set[Path] = set()
        self.finished: list[Path] = []

    def read_info(self, path: Path) -> ImageInfo:
        if self.source_info is not None and path not in self.outputs:
            return self.source_info
        return super().read_info(path)

    def encode(self, src, dest, fmt, quality, width, height, fit=None):
        self.encoded.append((src.name, fmt, quality, width, height, fit))
        self.outputs.add(dest)
        if self.fail_when and self.fail_when in src.name:
            if self.partial_output:
                dest.write_bytes(b"partial")
            raise OSError("broken data stream when reading image file")
        super().encode(src, dest, fmt, quality, width, height, fit)
        # output is on disk before the stall, like a codec that is slow to return
        if self.delay and (self.slow_when is None or self.slow_when in src.name):
            time.sleep(self.delay)
        self.finished.append(dest)


@pytest.fixture
def dirs(tmp_path):
    root = tmp_path / "temp"
    uploads = root / "uploads"
    output = root / "output"
    uploads.mkdir(parents=True)
    output.mkdir(parents=True)
    return SimpleNamespace(root=root, uploads=uploads, output=output)


@pytest.fixture
def cleanup(dirs):
    return CleanupScheduler(dirs.root)


@pytest.fixture
def service(dirs, cleanup):
    svc = ConversionService(upload_dir=dirs.uploads, output_dir=dirs.output, cleanup=cleanup)
    yield svc
    svc.shutdown()


SERVICE_OPTIONS = ("codec", "max_width", "max_height", "max_pixels", "timeout", "concurrency", "large_file_threshold")


@pytest.fixture
def build_pipeline(dirs):
    created = []

    def factory(**overrides) -> ConversionPipeline:
        cleanup = CleanupScheduler(dirs.root)
        service_kwargs = {k: overrides.pop(k) for k in SERVICE_OPTIONS if k in overrides}
        service = ConversionService(upload_dir=dirs.uploads, output_dir=dirs.output, cleanup=cleanup, **service_kwargs)
        archives = ArchiveBuilder(
            output_dir=dirs.output,
            max_content_bytes=overrides.pop("max_archive_bytes", 50 * 1024 * 1024),
            cleanup=cleanup,
        )
        pipeline = ConversionPipeline(
            service=service,
            archives=archives,
            cleanup=cleanup,
            quota=overrides.pop("quota", None) or QuotaTracker(100),
            rate_limiter=overrides.pop("rate_limiter", None) or RateLimiter(max_requests=0),
            upload_dir=dirs.uploads,
            **overrides,
        )
        created.append(pipeline)
        return pipeline

    yield factory
    for p in created:
        p.shutdown()


@pytest.fixture
def client_for(build_pipeline):
    def factory(**overrides):
        pipeline = build_pipeline(**overrides)
        app.dependency_overrides[get_pipeline] = lambda: pipeline
        return TestClient(app), pipeline

    yield factory
    app.dependency_overrides.clear()
