"""
docsync - Office Document Converter
===================================

Word, PowerPoint and Excel (OOXML) to Markdown.

- DOCX (python-docx): heading/title/quote/list styles, tables in body order
- PPTX (python-pptx): one section per slide, tables, speaker notes
- XLSX (openpyxl): one table per non-empty sheet

Legacy binary formats (.doc, .ppt, .xls) are not supported.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog
from docx import Document
from docx.table import Table
from docx.text.paragraph import Paragraph
from openpyxl import load_workbook
from pptx import Presentation

from docsync.processors.base import BaseConverter, ExtractedContent
from docsync.processors.heuristics import clean_raw_text, normalize_lists

logger = structlog.get_logger(__name__)

# Paragraph style name -> Markdown prefix
DOCX_STYLE_PREFIXES = {
    "Title": "# ",
    "Subtitle": "## ",
    "Heading 1": "# ",
    "Heading 2": "## ",
    "Heading 3": "### ",
    "Heading 4": "#### ",
    "Heading 5": "##### ",
    "Heading 6": "###### ",
    "Quote": "> ",
    "Intense Quote": "> ",
}

MAX_SHEET_ROWS = 5000


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).replace("|", "\\|")


def markdown_table(rows: List[List[Any]]) -> str:
    """Render rows as a Markdown table; the first row is the header."""
    rows = [[_cell_text(c) for c in row] for row in rows if any(str(c or "").strip() for c in row)]
    if not rows:
        return ""
    width = max(len(r) for r in rows)
    rows = [r + [""] * (width - len(r)) for r in rows]
    lines = ["| " + " | ".join(rows[0]) + " |", "|" + " --- |" * width]
    lines.extend("| " + " | ".join(r) + " |" for r in rows[1:])
    return "\n".join(lines)


class OfficeDocConverter(BaseConverter):
    """
    Converter for OOXML office documents.

    Selects the extractor based on file extension.
    """

    name = "Office Document Converter"
    supported_extensions = (".docx", ".pptx", ".xlsx")

    EXTRACTORS = {
        ".docx": "_extract_docx",
        ".pptx": "_extract_pptx",
        ".xlsx": "_extract_xlsx",
    }

    def extract(self, path: Path) -> ExtractedContent:
        extractor = getattr(self, self.EXTRACTORS[path.suffix.lower()])
        return extractor(path)

    def postprocess(self, content: ExtractedContent) -> str:
        # Structure comes from the document model; only list glyphs and
        # wrap artefacts need fixing
        return normalize_lists(clean_raw_text(content.text))

    # =========================================================================
    # DOCX
    # =========================================================================

    def _extract_docx(self, path: Path) -> ExtractedContent:
        doc = Document(str(path))
        blocks: List[str] = []
        warnings: List[str] = []
        table_count = 0

        for block in self._iter_docx_blocks(doc):
            if isinstance(block, Table):
                table_count += 1
                rendered = markdown_table([[cell.text for cell in row.cells] for row in block.rows])
                if rendered:
                    blocks.append(rendered)
                continue

            text = block.text.strip()
            if not text:
                continue
            blocks.append(self._docx_paragraph(block, text))

        if not blocks:
            warnings.append("Document contains no text")

        props = doc.core_properties
        metadata: Dict[str, Any] = {
            "title": props.title or None,
            "author": props.author or None,
            "paragraphs": len(doc.paragraphs),
            "tables": table_count,
        }
        return ExtractedContent(text=self._join_blocks(blocks), metadata=metadata, warnings=warnings)

    @staticmethod
    def _iter_docx_blocks(doc) -> Iterable[Any]:
        """Paragraphs and tables in body order."""
        for child in doc.element.body.iterchildren():
            tag = child.tag.rsplit("}", 1)[-1]
            if tag == "p":
                yield Paragraph(child, doc)
            elif tag == "tbl":
                yield Table(child, doc)

    @staticmethod
    def _docx_paragraph(paragraph: Paragraph, text: str) -> str:
        style = paragraph.style.name if paragraph.style is not None else ""
        prefix = DOCX_STYLE_PREFIXES.get(style)
        if prefix:
            return prefix + text
        if style.startswith("List Number"):
            return "1. " + text
        if style.startswith("List") or _has_numbering(paragraph):
            return "- " + text
        if style in ("Code", "HTML Preformatted"):
            return "\n".join("    " + line for line in text.split("\n"))
        return text

    @staticmethod
    def _join_blocks(blocks: List[str]) -> str:
        """Blank line between blocks, but keep consecutive list items together."""
        out: List[str] = []
        for block in blocks:
            is_item = block.startswith(("- ", "1. "))
            if out and is_item and out[-1].split("\n")[-1].startswith(("- ", "1. ")):
                out[-1] += "\n" + block
            else:
                out.append(block)
        return "\n\n".join(out)

    # =========================================================================
    # PPTX
    # =========================================================================

    def _extract_pptx(self, path: Path) -> ExtractedContent:
        prs = Presentation(str(path))
        sections: List[str] = []

        for number, slide in enumerate(prs.slides, start=1):
            title_shape = slide.shapes.title
            title = title_shape.text_frame.text.strip() if title_shape is not None and title_shape.has_text_frame else ""
            parts = [f"## Slide {number}: {title}" if title else f"## Slide {number}"]

            for shape in slide.shapes:
                if title_shape is not None and shape.shape_id == title_shape.shape_id:
                    continue
                if shape.has_text_frame:
                    lines = []
                    for para in shape.text_frame.paragraphs:
                        text = "".join(run.text for run in para.runs).strip()
                        if not text:
                            continue
                        lines.append(("  " * para.level + "- " + text) if para.level else text)
                    if lines:
                        parts.append("\n".join(lines))
                if getattr(shape, "has_table", False) and shape.has_table:
                    rendered = markdown_table([[cell.text for cell in row.cells] for row in shape.table.rows])
                    if rendered:
                        parts.append(rendered)

            if slide.has_notes_slide:
                notes = slide.notes_slide.notes_text_frame.text.strip() if slide.notes_slide.notes_text_frame else ""
                if notes:
                    parts.append("> Notes: " + " ".join(notes.split()))

            sections.append("\n\n".join(parts))

        props = prs.core_properties
        metadata = {
            "title": props.title or None,
            "author": props.author or None,
            "slides": len(sections),
        }
        warnings = [] if sections else ["Presentation contains no slides"]
        return ExtractedContent(
            text="\n\n".join(sections),
            metadata=metadata,
            warnings=warnings,
            page_count=len(sections),
        )

    # =========================================================================
    # XLSX
    # =========================================================================

    def _extract_xlsx(self, path: Path) -> ExtractedContent:
        wb = load_workbook(str(path), read_only=True, data_only=True)
        sections: List[str] = []
        warnings: List[str] = []
        sheet_names: List[str] = []

        try:
            sheet_names = list(wb.sheetnames)
            for sheet_name in sheet_names:
                sheet = wb[sheet_name]
                rows: List[List[Any]] = []
                for index, row in enumerate(sheet.iter_rows(values_only=True)):
                    if index >= MAX_SHEET_ROWS:
                        warnings.append(f"Sheet {sheet_name} truncated at {MAX_SHEET_ROWS} rows")
                        break
                    rows.append(list(row))

                table = markdown_table(rows)
                if table:
                    sections.append(f"## Sheet: {sheet_name}\n\n{table}")
        finally:
            wb.close()

        if not sections:
            warnings.append("Workbook contains no data")

        return ExtractedContent(
            text="\n\n".join(sections),
            metadata={"sheets": len(sheet_names)},
            warnings=warnings,
            page_count=len(sheet_names),
        )


def _has_numbering(paragraph: Paragraph) -> Optional[bool]:
    ppr = paragraph._p.pPr
    return ppr is not None and ppr.numPr is not None
