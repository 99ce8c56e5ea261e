from .service import ConversionService
from .models import ConversionOptions, ConversionResult, ImageFormat, SourceFile

__all__ = ["ConversionService", "ConversionOptions", "ConversionResult", "ImageFormat", "SourceFile"]
