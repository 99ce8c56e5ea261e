"""Zip creation for converted outputs, with a ceiling on total content size."""
import logging
import os
import time
import zipfile
from pathlib import Path
from typing import Optional, Sequence

from app.cleanup import CleanupScheduler
from app.config import MAX_ARCHIVE_CONTENT_BYTES, OUTPUT_DIR
from app.conversion.models import ConversionResult
from app.errors import ResourceLimitError
from app.paths import ensure_within, random_token

logger = logging.getLogger("converter.archive")


def archive_name() -> str:
    return f"converted_images_{int(time.time() * 1000)}_{random_token(4)}.zip"


class ArchiveBuilder:
    def __init__(
        self,
        output_dir: Path = OUTPUT_DIR,
        max_content_bytes: int = MAX_ARCHIVE_CONTENT_BYTES,
        cleanup: Optional[CleanupScheduler] = None,
    ):
        self.output_dir = Path(output_dir)
        self.max_content_bytes = max_content_bytes
        self.cleanup = cleanup or CleanupScheduler(self.output_dir)

    def build(self, results: Sequence[ConversionResult]) -> Path:
        """
        Zip every result (in the given order) at maximum compression and return the path.
        The archive is only returned once it is closed and synced to disk; on any
        failure the partial archive is removed before the error propagates.
        """
        zip_path = ensure_within(self.output_dir / archive_name(), self.output_dir)
        total = 0
        try:
            with open(zip_path, "wb") as fh:
                with zipfile.ZipFile(fh, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                    for result in results:
                        path = ensure_within(result.output_path, self.output_dir)
                        size = path.stat().st_size
                        if total + size > self.max_content_bytes:
                            raise ResourceLimitError(
                                f"Converted files exceed the maximum archive size of {self.max_content_bytes} bytes",
                                code="ARCHIVE_SIZE_EXCEEDED",
                                details={"maxArchiveSize": self.max_content_bytes, "attemptedSize": total + size},
                            )
                        zf.write(path, path.name)
                        total += size
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException:
            self.cleanup.delete_now([zip_path])
            raise
        logger.info("Created zip %s with %s files (%s bytes content, %s bytes on disk)",
                    zip_path.name, len(results), total, zip_path.stat().st_size)
        return zip_path
