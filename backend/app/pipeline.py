"""Request pipeline for POST /api/convert.

received -> quota_checked -> validated -> converting -> archiving -> responded -> cleaned_up,
with ``failed`` reachable from every step before ``responded``. Once any file has been
written, a failure deletes everything the request created before the error is returned.
"""
import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Sequence

from fastapi import Request
from starlette.datastructures import UploadFile

from app.archive import ArchiveBuilder
from app.cleanup import CleanupScheduler
from app.config import (
    ARCHIVE_TTL_SECONDS,
    DAILY_QUOTA_PER_IP,
    MAX_FILE_SIZE,
    MAX_FILES_PER_REQUEST,
    MAX_REQUEST_SIZE,
    OUTPUT_DIR,
    OUTPUT_FORMATS,
    INPUT_EXTENSIONS,
    QUOTA_BACKEND,
    REQUEST_TIMEOUT_SECONDS,
    UPLOAD_DIR,
    UPLOAD_FIELD_NAME,
)
from app.conversion.models import ConversionResult, RequestContext, RequestState, SourceFile
from app.conversion.service import ConversionService
from app.conversion.validation import validate_request
from app.errors import ConversionTimeoutError, ResourceLimitError
from app.paths import ensure_within, unique_upload_name
from app.quota import DatabaseQuotaStore, QuotaTracker, RateLimiter, get_client_key_strategy

logger = logging.getLogger("converter.pipeline")

CHUNK_SIZE = 1024 * 1024
DOWNLOAD_PREFIX = "/temp/output"


class ConversionPipeline:
    def __init__(
        self,
        service: Optional[ConversionService] = None,
        archives: Optional[ArchiveBuilder] = None,
        cleanup: Optional[CleanupScheduler] = None,
        quota: Optional[QuotaTracker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client_key: Optional[Callable[[Request], str]] = None,
        upload_dir: Path = UPLOAD_DIR,
        max_files: int = MAX_FILES_PER_REQUEST,
        max_file_size: int = MAX_FILE_SIZE,
        archive_ttl: float = ARCHIVE_TTL_SECONDS,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.upload_dir = Path(upload_dir)
        self.cleanup = cleanup or CleanupScheduler(self.upload_dir, archives.output_dir if archives else OUTPUT_DIR)
        self.service = service or ConversionService(upload_dir=self.upload_dir, cleanup=self.cleanup)
        self.archives = archives or ArchiveBuilder(cleanup=self.cleanup)
        self.quota = quota or QuotaTracker()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.client_key = client_key or get_client_key_strategy()
        self.max_files = max_files
        self.max_file_size = max_file_size
        self.archive_ttl = archive_ttl
        self.request_timeout = request_timeout
        self._archive_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="archive")

    @property
    def download_dir(self) -> Path:
        return self.archives.output_dir

    def limits(self) -> dict:
        return {
            "maxFilesPerRequest": self.max_files,
            "maxFileSize": self.max_file_size,
            "maxRequestSize": MAX_REQUEST_SIZE,
            "dailyQuota": self.quota.daily_limit,
            "maxDimensions": {"width": self.service.max_width, "height": self.service.max_height},
            "maxPixels": self.service.max_pixels,
            "maxArchiveSize": self.archives.max_content_bytes,
            "processingTimeoutSeconds": self.service.timeout,
        }

    def formats(self) -> dict:
        return {
            "formats": list(OUTPUT_FORMATS),
            "inputExtensions": sorted(INPUT_EXTENSIONS),
            "limits": self.limits(),
        }

    @staticmethod
    def _advance(ctx: RequestContext, state: RequestState) -> None:
        logger.debug("Request from %s: %s -> %s", ctx.client_id, ctx.state.value, state.value)
        ctx.state = state

    async def run(self, request: Request) -> dict:
        ctx = RequestContext(client_id=self.client_key(request))
        logger.info("Received conversion request from %s", ctx.client_id)
        try:
            self.rate_limiter.enforce(ctx.client_id)
            self.quota.enforce(ctx.client_id)
            self._advance(ctx, RequestState.QUOTA_CHECKED)

            form = await request.form()
            try:
                uploads = [u for u in form.getlist(UPLOAD_FIELD_NAME) if isinstance(u, UploadFile)]
                ctx.options = validate_request(
                    form,
                    [u.filename or "" for u in uploads],
                    self.max_files,
                    content_types=[u.content_type for u in uploads],
                )
                self._advance(ctx, RequestState.VALIDATED)
                logger.info("Validated options %s for %s file(s)", ctx.options.to_form(), len(uploads))
                ctx.sources = await self.save_uploads(uploads, ctx)
            finally:
                await form.close()

            await self._with_deadline(self._convert_and_archive(ctx))
        except BaseException as e:
            # cancellation included: nothing this request wrote may outlive it
            self._fail(ctx, e)
            raise

        removed = self.cleanup.delete_now([s.path for s in ctx.sources] + [r.output_path for r in ctx.results])
        logger.debug("Removed %s input/output file(s) after archiving", removed)
        payload = self.success_payload(ctx.results, ctx.archive_path)
        self._advance(ctx, RequestState.RESPONDED)
        logger.info(
            "Converted %s image(s) to %s for %s -> %s",
            len(ctx.results), ctx.options.format.value, ctx.client_id, ctx.archive_path.name,
        )
        self.cleanup.schedule_deletion([ctx.archive_path], self.archive_ttl)
        self._advance(ctx, RequestState.CLEANED_UP)
        return payload

    def _fail(self, ctx: RequestContext, error: BaseException) -> None:
        failed_at = ctx.state
        self._advance(ctx, RequestState.FAILED)
        removed = self.cleanup.delete_now(ctx.created_files) if ctx.created_files else 0
        logger.warning(
            "Conversion request from %s failed at %s: %s (removed %s temp file(s))",
            ctx.client_id, failed_at.value, error, removed,
        )

    async def save_uploads(self, uploads: Sequence[UploadFile], ctx: RequestContext) -> list[SourceFile]:
        """Stream each upload into the upload dir under a generated name, enforcing the size limit."""
        max_mb = self.max_file_size / (1024 * 1024)
        sources = []
        for upload in uploads:
            dest = ensure_within(self.upload_dir / unique_upload_name(upload.filename or ""), self.upload_dir)
            ctx.track(dest)
            total = 0
            # disk writes go to a worker thread so other requests keep being served
            f = await asyncio.to_thread(open, dest, "wb")
            try:
                while chunk := await upload.read(CHUNK_SIZE):
                    total += len(chunk)
                    if total > self.max_file_size:
                        raise ResourceLimitError(
                            f"File too large: {upload.filename} (max {max_mb:g} MB)",
                            code="FILE_TOO_LARGE",
                            details={"file": upload.filename, "maxFileSize": self.max_file_size},
                        )
                    await asyncio.to_thread(f.write, chunk)
            finally:
                await asyncio.to_thread(f.close)
            sources.append(SourceFile(path=dest, original_name=upload.filename or dest.name, size=total))
        return sources

    async def _with_deadline(self, coro):
        if not self.request_timeout or self.request_timeout <= 0:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise ConversionTimeoutError(
                f"Request took longer than {self.request_timeout:g} seconds",
                code="REQUEST_TIMEOUT",
                details={"timeoutSeconds": self.request_timeout},
            ) from None

    async def _convert_and_archive(self, ctx: RequestContext) -> None:
        self._advance(ctx, RequestState.CONVERTING)
        ctx.results = await self.service.convert_many(ctx.sources, ctx.options, on_output=ctx.track)
        self._advance(ctx, RequestState.ARCHIVING)
        ctx.archive_path = await self._build_archive(ctx.results)
        ctx.track(ctx.archive_path)

    def _discard_late_archive(self, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        logger.warning("Discarding archive %s finished after its request ended", future.result().name)
        self.cleanup.delete_now([future.result()])

    async def _build_archive(self, results: Sequence[ConversionResult]) -> Path:
        future = self._archive_executor.submit(self.archives.build, results)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            future.add_done_callback(self._discard_late_archive)
            raise

    @staticmethod
    def success_payload(results: Sequence[ConversionResult], archive_path: Path) -> dict:
        return {
            "success": True,
            "message": "Images converted successfully",
            "zipUrl": f"{DOWNLOAD_PREFIX}/{archive_path.name}",
            "images": [r.to_dict() for r in results],
        }

    def shutdown(self) -> None:
        self.cleanup.flush()
        self.service.shutdown()
        self._archive_executor.shutdown(wait=False, cancel_futures=True)


# Singleton
_pipeline: Optional[ConversionPipeline] = None


def get_pipeline() -> ConversionPipeline:
    global _pipeline
    if _pipeline is None:
        store = DatabaseQuotaStore() if QUOTA_BACKEND == "database" else None
        _pipeline = ConversionPipeline(quota=QuotaTracker(DAILY_QUOTA_PER_IP, store=store))
        logger.info("Conversion pipeline ready (quota backend: %s)", QUOTA_BACKEND)
    return _pipeline
