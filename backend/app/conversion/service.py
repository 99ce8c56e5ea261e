"""Image conversion service: limit checks, one codec call per file, bounded parallel execution."""
import asyncio
import logging
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Sequence

from app.cleanup import CleanupScheduler
from app.config import (
    CODEC_CONCURRENCY,
    LARGE_FILE_QUALITY_CAP,
    LARGE_FILE_THRESHOLD_BYTES,
    MAX_IMAGE_HEIGHT,
    MAX_IMAGE_PIXELS,
    MAX_IMAGE_WIDTH,
    OUTPUT_DIR,
    PROCESSING_TIMEOUT_SECONDS,
    UPLOAD_DIR,
)
from app.conversion.codec import ImageInfo, PillowCodec
from app.conversion.models import ConversionOptions, ConversionResult, FitMode, ImageFormat, SourceFile
from app.conversion.resize import resolve_target_size
from app.errors import AppError, ConversionTimeoutError, ProcessingError, ResourceLimitError
from app.paths import ensure_within, random_token, sanitize_stem

logger = logging.getLogger("converter.service")


class ConversionService:
    """Converts uploaded images one codec call at a time, at most ``concurrency`` at once."""

    def __init__(
        self,
        upload_dir: Path = UPLOAD_DIR,
        output_dir: Path = OUTPUT_DIR,
        codec: Optional[PillowCodec] = None,
        cleanup: Optional[CleanupScheduler] = None,
        max_width: int = MAX_IMAGE_WIDTH,
        max_height: int = MAX_IMAGE_HEIGHT,
        max_pixels: int = MAX_IMAGE_PIXELS,
        timeout: float = PROCESSING_TIMEOUT_SECONDS,
        concurrency: int = CODEC_CONCURRENCY,
        large_file_threshold: int = LARGE_FILE_THRESHOLD_BYTES,
        large_file_quality_cap: int = LARGE_FILE_QUALITY_CAP,
    ):
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        self.codec = codec or PillowCodec()
        self.cleanup = cleanup or CleanupScheduler(self.output_dir)
        self.max_width = max_width
        self.max_height = max_height
        self.max_pixels = max_pixels
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.large_file_threshold = large_file_threshold
        self.large_file_quality_cap = large_file_quality_cap
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="codec")
        # Caps jobs queued from one event loop; the timeout itself starts when a worker picks the job up
        self._slots: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = weakref.WeakKeyDictionary()
        logger.info("ConversionService initialized with concurrency=%s timeout=%ss", self.concurrency, self.timeout)

    def check_dimensions(self, info: ImageInfo, source: SourceFile) -> None:
        if info.width > self.max_width or info.height > self.max_height:
            raise ResourceLimitError(
                f"Image {source.original_name} is {info.width}x{info.height}, "
                f"maximum allowed dimensions are {self.max_width}x{self.max_height}",
                code="DIMENSION_LIMIT_EXCEEDED",
                details={"file": source.original_name, "width": info.width, "height": info.height,
                         "maxWidth": self.max_width, "maxHeight": self.max_height},
            )
        if info.width * info.height > self.max_pixels:
            raise ResourceLimitError(
                f"Image {source.original_name} has {info.width * info.height} pixels, "
                f"maximum allowed is {self.max_pixels}",
                code="PIXEL_LIMIT_EXCEEDED",
                details={"file": source.original_name, "pixels": info.width * info.height,
                         "maxPixels": self.max_pixels},
            )

    def effective_quality(self, quality: int, input_size: int) -> int:
        """Large inputs are capped to a lower quality to bound output size and encode time."""
        if input_size > self.large_file_threshold:
            return min(quality, self.large_file_quality_cap)
        return quality

    def output_path_for(self, source: SourceFile, fmt: ImageFormat, width: int, height: int) -> Path:
        name = f"{sanitize_stem(source.original_name)}_{width}x{height}_{random_token(6)}.{fmt.value}"
        return ensure_within(self.output_dir / name, self.output_dir)

    def convert(self, source: SourceFile, options: ConversionOptions) -> ConversionResult:
        """Convert a single file. Blocking; runs in a codec worker thread."""
        src = ensure_within(source.path, self.upload_dir)
        try:
            info = self.codec.read_info(src)
        except ResourceLimitError as e:
            logger.warning("Rejected %s before decoding: %s", source.original_name, e.message)
            raise ResourceLimitError(
                f"Image {source.original_name} exceeds the maximum allowed dimensions "
                f"of {self.max_width}x{self.max_height}",
                code="DIMENSION_LIMIT_EXCEEDED",
                details={"file": source.original_name, "maxWidth": self.max_width, "maxHeight": self.max_height},
            ) from e
        except Exception as e:
            logger.warning("Could not read %s (%s): %s", source.original_name, src.name, e)
            raise ProcessingError(
                f"Could not read image {source.original_name}",
                details={"file": source.original_name, "reason": str(e)},
            ) from e
        self.check_dimensions(info, source)

        width, height = resolve_target_size(
            info.width, info.height,
            options.width, options.height,
            options.maintain_aspect_ratio,
            self.max_width, self.max_height,
        )
        input_size = source.size or src.stat().st_size
        quality = self.effective_quality(options.quality, input_size)
        fit = FitMode.FILL if options.maintain_aspect_ratio else options.fit
        out_path = self.output_path_for(source, options.format, width, height)

        try:
            self.codec.encode(src, out_path, options.format, quality, width, height, fit)
            out_info = self.codec.read_info(out_path)
        except Exception as e:
            logger.exception("Image conversion failed for %s: %s", source.original_name, e)
            self.cleanup.delete_now([out_path])
            raise ProcessingError(
                f"Could not convert image {source.original_name}",
                details={"file": source.original_name, "reason": str(e)},
            ) from e

        logger.info("Converted %s -> %s (%sx%s)", source.original_name, out_path.name, out_info.width, out_info.height)
        return ConversionResult(
            source=source,
            output_path=out_path,
            format=options.format,
            width=out_info.width,
            height=out_info.height,
            size=out_path.stat().st_size,
        )

    def _slot(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        sem = self._slots.get(loop)
        if sem is None:
            sem = asyncio.Semaphore(self.concurrency)
            self._slots[loop] = sem
        return sem

    def _discard_late_result(self, future: Future) -> None:
        """A conversion outlived its caller; remove whatever it produced."""
        if future.cancelled() or future.exception() is not None:
            return
        result = future.result()
        logger.warning("Discarding late conversion output %s", result.output_path.name)
        self.cleanup.delete_now([result.output_path])

    @staticmethod
    def _release_slot(loop: asyncio.AbstractEventLoop, slot: asyncio.Semaphore) -> None:
        try:
            loop.call_soon_threadsafe(slot.release)
        except RuntimeError:
            # loop already closed, nothing can be waiting on its semaphore
            pass

    async def convert_async(self, source: SourceFile, options: ConversionOptions) -> ConversionResult:
        """
        Run ``convert`` on a codec worker. The slot stays taken until the worker is done,
        even if the caller gave up, and ``timeout`` counts from the moment the worker starts.
        """
        loop = asyncio.get_running_loop()
        slot = self._slot()
        await slot.acquire()
        started = asyncio.Event()

        def work() -> ConversionResult:
            loop.call_soon_threadsafe(started.set)
            return self.convert(source, options)

        try:
            future = self._executor.submit(work)
        except BaseException:
            slot.release()
            raise
        future.add_done_callback(lambda _: self._release_slot(loop, slot))

        try:
            await started.wait()
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            future.add_done_callback(self._discard_late_result)
            logger.warning("Conversion of %s exceeded %ss", source.original_name, self.timeout)
            raise ConversionTimeoutError(
                f"Processing {source.original_name} took longer than {self.timeout:g} seconds",
                details={"file": source.original_name, "timeoutSeconds": self.timeout},
            ) from None
        except asyncio.CancelledError:
            future.cancel()
            future.add_done_callback(self._discard_late_result)
            raise

    async def convert_many(
        self,
        sources: Sequence[SourceFile],
        options: ConversionOptions,
        on_output: Optional[Callable[[Path], None]] = None,
    ) -> list[ConversionResult]:
        """
        Convert all sources concurrently and wait for every one of them.
        Results come back in source order. If any file failed, the first failure in
        source order is raised; ``on_output`` has already seen every output that was written.
        """

        async def run(source: SourceFile) -> ConversionResult:
            result = await self.convert_async(source, options)
            if on_output:
                on_output(result.output_path)
            return result

        outcomes = await asyncio.gather(*(run(s) for s in sources), return_exceptions=True)
        failures = [(s, o) for s, o in zip(sources, outcomes) if isinstance(o, BaseException)]
        if failures:
            logger.warning("%s of %s conversions failed", len(failures), len(sources))
            source, error = failures[0]
            if isinstance(error, AppError) or not isinstance(error, Exception):
                raise error
            raise ProcessingError(
                f"Could not convert image {source.original_name}",
                details={"file": source.original_name, "reason": str(error)},
            ) from error
        return list(outcomes)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
