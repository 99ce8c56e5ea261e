"""API routes for conversion, format/limit discovery and archive downloads."""
import logging
import re

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from app.config import DOWNLOAD_EXTENSION_PATTERN
from app.errors import AppError, PathSafetyError
from app.paths import ensure_within
from app.pipeline import ConversionPipeline, get_pipeline

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])
downloads = APIRouter(tags=["downloads"])

_DOWNLOADABLE = re.compile(DOWNLOAD_EXTENSION_PATTERN, re.IGNORECASE)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats(pipeline: ConversionPipeline = Depends(get_pipeline)):
    """Supported output formats and the current operating limits."""
    return {"success": True, "data": pipeline.formats()}


@router.post("/convert")
async def convert_images(request: Request, pipeline: ConversionPipeline = Depends(get_pipeline)):
    """
    Multipart body: files under ``images`` plus ``format`` (required), ``width``, ``height``,
    ``quality``, ``maintainAspectRatio`` and ``fit``. Returns the archive URL and per-image metadata.
    The body is only read after the client's quota has been checked.
    """
    return await pipeline.run(request)


@downloads.get("/temp/{file_path:path}")
def download_temp_file(file_path: str, pipeline: ConversionPipeline = Depends(get_pipeline)):
    """Serve a converted archive or image. Anything not on the extension allowlist is refused."""
    if not _DOWNLOADABLE.search(file_path):
        raise PathSafetyError("Access denied", code="FORBIDDEN_FILE_TYPE")
    prefix, _, name = file_path.partition("/")
    if prefix != "output" or not name:
        raise AppError("File not found", status_code=404, code="NOT_FOUND")
    path = ensure_within(pipeline.download_dir / name, pipeline.download_dir)
    if not path.is_file():
        raise AppError("File not found or expired", status_code=404, code="NOT_FOUND")
    return FileResponse(path, filename=path.name)
