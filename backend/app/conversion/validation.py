"""Validation of conversion options and upload constraints.

Form data arrives as strings. Options go through the ``ConversionOptions`` schema;
every problem (options, file count, file types) is collected and reported in a
single ``ValidationError`` so a client can fix all of them at once.
"""
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from pydantic import ValidationError as SchemaError

from app.config import INPUT_EXTENSIONS, INPUT_MIME_TYPES, MAX_FILES_PER_REQUEST
from app.conversion.models import ConversionOptions
from app.errors import ValidationError

logger = logging.getLogger("converter.validation")

OPTION_FIELDS = ("format", "width", "height", "quality", "maintainAspectRatio", "fit")


def _clean(raw: Mapping[str, Any]) -> dict:
    """Keep known option fields; empty form values count as absent."""
    cleaned = {}
    for key in OPTION_FIELDS:
        value = raw.get(key)
        if isinstance(value, str):
            value = value.strip()
        if value is None or value == "":
            continue
        cleaned[key] = value
    return cleaned


def _schema_errors(exc: SchemaError) -> list[dict]:
    errors = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "options"
        errors.append({"field": field, "message": err.get("msg", "Invalid value")})
    return errors


def _raise(errors: list[dict]) -> None:
    message = errors[0]["message"] if len(errors) == 1 else "Invalid conversion request"
    logger.info("Validation failed: %s", errors)
    raise ValidationError(message, details=errors)


def check_options(raw: Mapping[str, Any]) -> tuple[Optional[ConversionOptions], list[dict]]:
    try:
        return ConversionOptions.model_validate(_clean(raw)), []
    except SchemaError as e:
        return None, _schema_errors(e)


def check_files(
    filenames: Sequence[str],
    max_files: int = MAX_FILES_PER_REQUEST,
    content_types: Optional[Sequence[Optional[str]]] = None,
) -> list[dict]:
    """File count, extension and (when given) declared content type; both must be on the allowlist."""
    errors = []
    if not filenames:
        errors.append({"field": "images", "message": "No images were uploaded"})
    elif len(filenames) > max_files:
        errors.append({
            "field": "images",
            "message": f"Maximum number of files exceeded. Maximum allowed: {max_files}",
        })
    for i, name in enumerate(filenames):
        ext = Path(name or "").suffix.lower()
        if ext not in INPUT_EXTENSIONS:
            errors.append({
                "field": f"images.{i}",
                "message": f"Unsupported file type '{ext or name}'. Allowed: {', '.join(sorted(INPUT_EXTENSIONS))}",
            })
        if content_types is None:
            continue
        mime = (content_types[i] or "").split(";")[0].strip().lower()
        if mime not in INPUT_MIME_TYPES:
            errors.append({
                "field": f"images.{i}",
                "message": f"Unsupported content type '{mime or 'missing'}' for {name}",
            })
    return errors


def validate_options(raw: Mapping[str, Any]) -> ConversionOptions:
    options, errors = check_options(raw)
    if errors:
        _raise(errors)
    return options


def validate_request(
    raw: Mapping[str, Any],
    filenames: Sequence[str],
    max_files: int = MAX_FILES_PER_REQUEST,
    content_types: Optional[Sequence[Optional[str]]] = None,
) -> ConversionOptions:
    """Validate options and the uploaded file list together; raise with every problem found."""
    options, errors = check_options(raw)
    errors.extend(check_files(filenames, max_files, content_types))
    if errors:
        _raise(errors)
    return options
