"""Conversion request/response models."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from app.config import DEFAULT_QUALITY


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    AVIF = "avif"
    GIF = "gif"


class FitMode(str, Enum):
    """Placement inside an explicit width x height box when the aspect ratio is not kept."""

    CONTAIN = "contain"  # letterbox
    COVER = "cover"  # centre crop
    FILL = "fill"  # stretch


class RequestState(str, Enum):
    RECEIVED = "received"
    QUOTA_CHECKED = "quota_checked"
    VALIDATED = "validated"
    CONVERTING = "converting"
    ARCHIVING = "archiving"
    RESPONDED = "responded"
    CLEANED_UP = "cleaned_up"
    FAILED = "failed"


class ConversionOptions(BaseModel):
    """Validated, immutable conversion options. Field aliases match the form field names."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    format: ImageFormat
    width: Optional[PositiveInt] = None
    height: Optional[PositiveInt] = None
    quality: int = DEFAULT_QUALITY
    maintain_aspect_ratio: bool = Field(True, alias="maintainAspectRatio")
    fit: FitMode = FitMode.CONTAIN

    @field_validator("format", "fit", mode="before")
    @classmethod
    def _normalize_choice(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "jpg":
                return "jpeg"
        return v

    @field_validator("quality")
    @classmethod
    def _clamp_quality(cls, v: int) -> int:
        return max(1, min(100, v))

    def to_form(self) -> dict:
        """Options as form-style values, e.g. to re-validate or echo back."""
        return self.model_dump(by_alias=True, mode="json")


@dataclass(frozen=True)
class SourceFile:
    path: Path
    original_name: str
    size: int = 0


@dataclass(frozen=True)
class ConversionResult:
    source: SourceFile
    output_path: Path
    format: ImageFormat
    width: int
    height: int
    size: int = 0

    def to_dict(self) -> dict:
        return {
            "originalName": self.source.original_name,
            "fileName": self.output_path.name,
            "format": self.format.value,
            "width": self.width,
            "height": self.height,
            "size": self.size,
        }


@dataclass
class RequestContext:
    """Per-request state: every file created here is removed if the request fails."""

    client_id: str
    state: RequestState = RequestState.RECEIVED
    options: Optional[ConversionOptions] = None
    sources: list[SourceFile] = field(default_factory=list)
    results: list[ConversionResult] = field(default_factory=list)
    archive_path: Optional[Path] = None
    created_files: list[Path] = field(default_factory=list)

    def track(self, *paths: Path) -> None:
        for p in paths:
            if p not in self.created_files:
                self.created_files.append(p)
