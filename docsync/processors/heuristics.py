"""
docsync - Text-to-Markdown Heuristics
=====================================

Shared, format-independent heuristics applied to extracted text:
- control-character cleanup and soft line-break repair
- header detection from capitalisation and line shape
- bullet / numbered list normalisation
- paragraph separation and blank-line collapsing
- front-matter metadata block

Best effort by nature; none of these functions raise on odd input.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

GENERATED_BY = "docsync"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_HYPHEN_WRAP = re.compile(r"([a-z])-\n([a-z])")
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")

_BULLET = re.compile(r"^[ \t]*[•·‣▪▫◦*\-][ \t]+(.+)$", re.MULTILINE)
_NUMBERED = re.compile(r"^[ \t]*(\d+)[.)][ \t]+(.+)$", re.MULTILINE)

_NUMBERED_TITLE = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+\S")
_LIST_LINE = re.compile(r"^(?:- |\d+\. )")
_STRUCTURAL = re.compile(r"^(?:#{1,6} |- |\d+\. |> |\||```|    )")

_SENTENCE_END = (".", "!", "?", ":", ";", ",")


def clean_raw_text(text: str) -> str:
    """Strip control characters, normalise newlines and join hyphenated wraps."""
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _TRAILING_WS.sub("", cleaned)
    cleaned = _HYPHEN_WRAP.sub(r"\1\2", cleaned)
    return cleaned


def normalize_lists(text: str) -> str:
    """Rewrite bullet glyphs to "- " and "1)" style numbering to "1."."""
    if not text:
        return ""
    text = _BULLET.sub(r"- \1", text)
    return _NUMBERED.sub(r"\1. \2", text)


def _is_all_caps(line: str) -> bool:
    letters = [c for c in line if c.isalpha()]
    return len(line) > 5 and bool(letters) and line.upper() == line


def detect_headers(text: str) -> str:
    """
    Promote likely headings to Markdown headers.

    - all-caps lines (over 5 chars, under 80) -> h1
    - numbered section titles ("2. Scope", "3.1 Limits") not part of a list -> h2/h3
    - short isolated lines without closing punctuation -> h2
    """
    if not text:
        return ""
    lines = text.split("\n")
    out: List[str] = []

    for i, raw in enumerate(lines):
        line = raw.strip()
        prev_line = lines[i - 1].strip() if i > 0 else ""
        next_line = lines[i + 1].strip() if i + 1 < len(lines) else ""

        if not line or len(line) >= 80 or line.startswith("#") or line.startswith("|"):
            out.append(raw)
            continue

        level = 0
        numbered = _NUMBERED_TITLE.match(line)
        if _is_all_caps(line) and not _LIST_LINE.match(line):
            level = 1
        elif numbered and not line.endswith(_SENTENCE_END):
            in_list = bool(_LIST_LINE.match(prev_line) or _LIST_LINE.match(next_line))
            if not in_list:
                level = min(2 + numbered.group(1).count("."), 6)
        elif (
            not prev_line
            and not next_line
            and len(line) < 50
            and not line.endswith(_SENTENCE_END)
            and not _STRUCTURAL.match(line)
        ):
            level = 2

        out.append(f"{'#' * level} {line}" if level else raw)

    return "\n".join(out)


def separate_paragraphs(text: str) -> str:
    """
    Rebuild paragraphs from hard-wrapped lines.

    Consecutive prose lines are joined with a space unless the previous
    one ends a sentence; structural lines (headers, list items, tables,
    quotes) each stand in their own block, list items stay contiguous.
    """
    if not text:
        return ""
    blocks: List[str] = []
    current: List[str] = []
    in_list = False

    def flush():
        if current:
            blocks.append(" ".join(current))
            current.clear()

    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            flush()
            in_list = False
            continue

        if line.startswith("#"):
            flush()
            blocks.append(line)
            in_list = False
        elif _LIST_LINE.match(line) or line.startswith("|"):
            flush()
            if in_list and blocks:
                blocks[-1] = blocks[-1] + "\n" + line
            else:
                blocks.append(line)
            in_list = True
        else:
            if in_list:
                in_list = False
            if current and current[-1].endswith((".", "!", "?")) and line[:1].isupper():
                flush()
            current.append(line)

    flush()
    return "\n\n".join(blocks)


def clean_markdown(markdown: str) -> str:
    """Collapse blank-line runs, strip trailing spaces, end with one newline."""
    if not markdown:
        return ""
    cleaned = _BLANK_RUNS.sub("\n\n", markdown)
    cleaned = _TRAILING_WS.sub("", cleaned)
    cleaned = cleaned.strip()
    return cleaned + "\n" if cleaned else ""


def text_to_markdown(text: str, page_count: int = 1) -> str:
    """Full heuristic pipeline for plain extracted text (e.g. PDF pages)."""
    markdown = clean_raw_text(text)
    markdown = normalize_lists(markdown)
    markdown = detect_headers(markdown)
    markdown = separate_paragraphs(markdown)
    if page_count > 1:
        markdown = f"> Extracted from a {page_count}-page PDF\n\n" + markdown
    return markdown


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return " ".join(str(value).split())


def build_metadata_block(metadata: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Front matter: "---", one "key: value" per line, "---"."""
    fields = dict(metadata)
    fields.setdefault("generated_by", GENERATED_BY)
    fields.setdefault("generated_at", (now or datetime.now(timezone.utc)).isoformat())

    lines = ["---"]
    for key, value in fields.items():
        if value is None or value == "":
            continue
        lines.append(f"{key}: {_format_value(value)}")
    lines.append("---")
    return "\n".join(lines)


def add_metadata(markdown: str, metadata: Dict[str, Any], now: Optional[datetime] = None) -> str:
    return build_metadata_block(metadata, now) + "\n\n" + (markdown or "")
