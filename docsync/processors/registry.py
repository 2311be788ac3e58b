"""
docsync - Converter Registry
============================

Maps file extensions to converter classes.
"""

from pathlib import Path
from typing import Dict, List, Type, Union

import structlog

from docsync.processors.base import BaseConverter, ConversionResult
from docsync.processors.office import OfficeDocConverter
from docsync.processors.pdf import PdfConverter
from docsync.services.base import ConversionError

logger = structlog.get_logger(__name__)


class ConverterRegistry:
    """Registry for converter types, keyed by lower-case extension."""

    _converters: Dict[str, Type[BaseConverter]] = {}

    @classmethod
    def register(cls, converter_class: Type[BaseConverter]) -> Type[BaseConverter]:
        for extension in converter_class.supported_extensions:
            cls._converters[extension] = converter_class
        return converter_class

    @classmethod
    def supported_extensions(cls) -> List[str]:
        return sorted(cls._converters)

    @classmethod
    def is_supported(cls, extension: str) -> bool:
        return _normalize(extension) in cls._converters

    @classmethod
    def get_converter(cls, extension: str) -> BaseConverter:
        """
        Get a converter instance for an extension (".pdf" or "pdf").

        Raises:
            ConversionError: the format has no converter
        """
        normalized = _normalize(extension)
        converter_class = cls._converters.get(normalized)
        if converter_class is None:
            raise ConversionError(
                f"Unsupported file format: {extension or '(none)'}. "
                f"Supported formats: {', '.join(cls.supported_extensions())}",
                details={"extension": normalized},
            )
        return converter_class()


def _normalize(extension: str) -> str:
    extension = (extension or "").strip().lower()
    if extension and not extension.startswith("."):
        extension = "." + extension
    return extension


def get_converter(extension: str) -> BaseConverter:
    return ConverterRegistry.get_converter(extension)


def convert_file(path: Union[str, Path]) -> ConversionResult:
    """Pick a converter by suffix and convert. Raises ConversionError only for unknown formats."""
    path = Path(path)
    return get_converter(path.suffix).convert(path)


ConverterRegistry.register(OfficeDocConverter)
ConverterRegistry.register(PdfConverter)
