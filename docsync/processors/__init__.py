"""
docsync - Format Converters
===========================

Local document to Markdown converters for PDF and OOXML office files.
"""

from docsync.processors.base import BaseConverter, ConversionResult, ExtractedContent
from docsync.processors.office import OfficeDocConverter
from docsync.processors.pdf import PdfConverter
from docsync.processors.registry import ConverterRegistry, convert_file, get_converter

__all__ = [
    "BaseConverter",
    "ConversionResult",
    "ExtractedContent",
    "OfficeDocConverter",
    "PdfConverter",
    "ConverterRegistry",
    "convert_file",
    "get_converter",
]
