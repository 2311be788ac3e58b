"""
docsync - PDF Converter
=======================

PDF to Markdown using PyMuPDF. Text comes out page by page with no
structure, so the full heuristic pipeline rebuilds headers, lists and
paragraphs.
"""

from pathlib import Path

import fitz  # PyMuPDF
import structlog

from docsync.processors.base import BaseConverter, ExtractedContent
from docsync.processors.heuristics import text_to_markdown
from docsync.services.base import ConversionError

logger = structlog.get_logger(__name__)


class PdfConverter(BaseConverter):
    """Converter for PDF documents."""

    name = "PDF Converter"
    supported_extensions = (".pdf",)

    def extract(self, path: Path) -> ExtractedContent:
        doc = fitz.open(str(path))
        try:
            if doc.needs_pass or doc.is_encrypted:
                raise ConversionError("Encrypted PDFs are not supported")

            pages = [page.get_text("text") for page in doc]
            info = doc.metadata or {}
            page_count = doc.page_count
        finally:
            doc.close()

        warnings = []
        if not any(text.strip() for text in pages):
            warnings.append("No extractable text; the PDF may be scanned images")

        metadata = {
            "pages": page_count,
            "title": info.get("title") or None,
            "author": info.get("author") or None,
            "creator": info.get("creator") or None,
            "creation_date": info.get("creationDate") or None,
        }
        return ExtractedContent(
            text="\n\n".join(pages),
            metadata=metadata,
            warnings=warnings,
            page_count=page_count,
        )

    def postprocess(self, content: ExtractedContent) -> str:
        return text_to_markdown(content.text, content.page_count)
