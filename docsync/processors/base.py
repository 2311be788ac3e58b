"""
docsync - Base Converter
========================

Every converter turns one local file into Markdown-style text:
validate input -> extract -> shared heuristics -> metadata block ->
clean -> checksum. convert() never raises; a corrupt or unsupported
file becomes a failed ConversionResult so only that job fails.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from docsync.processors.heuristics import add_metadata, clean_markdown
from docsync.services.base import ConversionError
from docsync.utils.paths import md5_text

logger = structlog.get_logger(__name__)

# Leading bytes expected per extension
FILE_SIGNATURES = {
    ".pdf": b"%PDF",
    ".docx": b"PK",
    ".pptx": b"PK",
    ".xlsx": b"PK",
}


@dataclass
class ExtractedContent:
    """Raw structure pulled out of a document before cleanup."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    page_count: int = 0


@dataclass
class ConversionResult:
    """Outcome of one conversion."""
    success: bool
    output_text: str = ""
    checksum: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class BaseConverter(ABC):
    """
    Base class for format converters.

    Subclasses set ``supported_extensions`` and implement extract() and
    postprocess().
    """

    name: str = "Base Converter"
    format_tag: str = ""
    supported_extensions: tuple = ()

    def convert(self, input_path: Union[str, Path], source_name: Optional[str] = None) -> ConversionResult:
        """Convert input_path; source_name is the original file name for the metadata block."""
        path = Path(input_path)
        display_name = source_name or path.name
        try:
            size = self.validate_input_file(path)
            content = self.extract(path)
            body = self.postprocess(content)

            metadata = {
                "source_file": display_name,
                "file_size": size,
                "format": (self.format_tag or path.suffix.lstrip(".")).upper(),
                **content.metadata,
            }
            output = clean_markdown(add_metadata(body, metadata))

            logger.info(
                "Document converted",
                converter=self.name,
                file_name=display_name,
                output_length=len(output),
                warnings=len(content.warnings),
            )
            return ConversionResult(
                success=True,
                output_text=output,
                checksum=md5_text(output),
                metadata=metadata,
                warnings=list(content.warnings),
            )
        except Exception as e:
            message = e.message if isinstance(e, ConversionError) else str(e) or type(e).__name__
            logger.warning("Conversion failed", converter=self.name, file_name=display_name, error=message)
            return ConversionResult(
                success=False,
                error=f"{self.name} failed for {display_name}: {message}",
                metadata={"converter": self.name, "error_type": type(e).__name__},
            )

    def validate_input_file(self, path: Path) -> int:
        """
        Check existence, type, size, extension and file signature.

        Returns:
            File size in bytes

        Raises:
            ConversionError: on any failed check
        """
        if not path.exists():
            raise ConversionError(f"Input file does not exist: {path}")
        if not path.is_file():
            raise ConversionError(f"Path is not a file: {path}")

        size = path.stat().st_size
        if size == 0:
            raise ConversionError(f"Input file is empty: {path}")

        extension = path.suffix.lower()
        if extension not in self.supported_extensions:
            raise ConversionError(
                f"Unsupported extension: {extension or '(none)'}. "
                f"Supported: {', '.join(self.supported_extensions)}"
            )

        signature = FILE_SIGNATURES.get(extension)
        if signature:
            with open(path, "rb") as f:
                header = f.read(8)
            if not header.startswith(signature):
                raise ConversionError(f"File does not appear to be a valid {extension[1:].upper()} file")

        return size

    @abstractmethod
    def extract(self, path: Path) -> ExtractedContent:
        """Read the native format."""

    @abstractmethod
    def postprocess(self, content: ExtractedContent) -> str:
        """Apply shared heuristics to extracted content."""
