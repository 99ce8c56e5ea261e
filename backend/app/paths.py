"""Filename sanitising and directory-boundary checks for temp files."""
import os
import re
import secrets
import time
from pathlib import Path
from typing import Union

from app.errors import PathSafetyError

PathLike = Union[str, os.PathLike]

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
MAX_STEM_LENGTH = 90


def is_within(path: PathLike, root: PathLike) -> bool:
    """True if ``path`` resolves (symlinks and ``..`` included) inside ``root``."""
    resolved = Path(path).resolve()
    root_resolved = Path(root).resolve()
    return resolved == root_resolved or root_resolved in resolved.parents


def ensure_within(path: PathLike, root: PathLike) -> Path:
    """Return the resolved path, or raise PathSafetyError if it escapes ``root``."""
    if not is_within(path, root):
        raise PathSafetyError(
            "Access to the requested file is not allowed",
            details={"path": Path(path).name},
        )
    return Path(path).resolve()


def sanitize_stem(filename: str) -> str:
    """Safe file stem derived from an untrusted client filename."""
    stem = Path(Path(filename or "").name).stem
    stem = _UNSAFE_CHARS.sub("_", stem).strip("._")
    return stem[:MAX_STEM_LENGTH] or "image"


def random_token(nbytes: int = 8) -> str:
    return secrets.token_hex(nbytes)


def unique_upload_name(original_name: str) -> str:
    """``<stem>-<epoch-ms>-<random>.<ext>``; the extension is kept only if it is plain."""
    ext = Path(original_name or "").suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,5}", ext):
        ext = ""
    return f"{sanitize_stem(original_name)}-{int(time.time() * 1000)}-{random_token()}{ext}"
