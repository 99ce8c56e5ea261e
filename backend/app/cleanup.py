"""Best-effort deletion of temp files, now or after a grace period."""
import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from app.config import OUTPUT_DIR, UPLOAD_DIR
from app.errors import CleanupError
from app.paths import is_within

logger = logging.getLogger("converter.cleanup")


class CleanupScheduler:
    """
    Deletes files that resolve inside one of ``roots`` (the upload and output dirs by default).
    Failures (missing file, permissions, a path outside every root) are logged and never raised to the caller.
    """

    def __init__(self, *roots: Path):
        self.roots = [Path(r) for r in roots or (UPLOAD_DIR, OUTPUT_DIR)]
        self._pending: dict[asyncio.TimerHandle, list[Path]] = {}

    def _unlink(self, path: Path) -> bool:
        if not any(is_within(path, root) for root in self.roots):
            raise CleanupError(f"Refusing to delete {path}: outside {', '.join(map(str, self.roots))}")
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CleanupError(f"Could not remove {path}: {e}") from e
        return True

    def delete_now(self, paths: Iterable[Path]) -> int:
        """Delete files immediately. Returns how many were actually removed."""
        removed = 0
        for p in paths:
            try:
                if self._unlink(Path(p)):
                    removed += 1
                    logger.debug("Removed temp file %s", Path(p).name)
            except CleanupError as e:
                logger.warning("%s", e.message)
        return removed

    def schedule_deletion(self, paths: Iterable[Path], delay: float) -> Optional[asyncio.TimerHandle]:
        """Delete files after ``delay`` seconds on the running event loop."""
        paths = [Path(p) for p in paths]
        if not paths:
            return None
        if delay <= 0:
            self.delete_now(paths)
            return None
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _run() -> None:
            self._pending.pop(handle, None)
            self.delete_now(paths)

        handle = loop.call_later(delay, _run)
        self._pending[handle] = paths
        logger.debug("Scheduled deletion of %s file(s) in %ss", len(paths), delay)
        return handle

    def pending(self) -> list[Path]:
        return [p for paths in self._pending.values() for p in paths]

    def flush(self) -> int:
        """Cancel scheduled deletions and delete their files now (used at shutdown)."""
        removed = 0
        for handle, paths in list(self._pending.items()):
            handle.cancel()
            removed += self.delete_now(paths)
        self._pending.clear()
        if removed:
            logger.info("Removed %s pending temp file(s) at shutdown", removed)
        return removed
