"""
docsync - Text-to-Markdown Heuristics Tests
===========================================
"""

from datetime import datetime, timezone

from docsync.processors.heuristics import (
    add_metadata,
    build_metadata_block,
    clean_markdown,
    clean_raw_text,
    detect_headers,
    normalize_lists,
    separate_paragraphs,
    text_to_markdown,
)


class TestCleanRawText:

    def test_strips_control_characters(self):
        assert clean_raw_text("a\x00b\x07c") == "abc"

    def test_normalises_newlines_and_trailing_space(self):
        assert clean_raw_text("one  \r\ntwo\rthree") == "one\ntwo\nthree"

    def test_joins_hyphenated_wraps(self):
        assert clean_raw_text("infor-\nmation") == "information"

    def test_keeps_real_hyphens(self):
        assert clean_raw_text("Q3-\nReport") == "Q3-\nReport"

    def test_empty(self):
        assert clean_raw_text("") == ""


class TestNormalizeLists:

    def test_bullet_glyphs(self):
        text = "• first\n◦ second\n* third\n- fourth"
        assert normalize_lists(text) == "- first\n- second\n- third\n- fourth"

    def test_numbered_with_parenthesis(self):
        assert normalize_lists("1) one\n2) two") == "1. one\n2. two"


class TestDetectHeaders:

    def test_all_caps_line_is_h1(self):
        assert detect_headers("INTRODUCTION\nBody text here.").startswith("# INTRODUCTION")

    def test_short_all_caps_is_left_alone(self):
        assert detect_headers("NOTE\nBody text here.").startswith("NOTE")

    def test_numbered_section_title(self):
        text = "Some intro sentence.\n\n2. Scope\n\nThe scope is wide."
        assert "## 2. Scope" in detect_headers(text)

    def test_numbered_subsection_is_deeper(self):
        assert "### 3.1 Limits" in detect_headers("\n3.1 Limits\n")

    def test_numbered_list_is_not_a_header(self):
        text = "1. Buy milk\n2. Buy bread"
        assert detect_headers(text) == text

    def test_isolated_short_line_is_h2(self):
        text = "First paragraph ends here.\n\nBackground\n\nMore prose follows."
        assert "## Background" in detect_headers(text)

    def test_sentence_is_not_a_header(self):
        text = "Intro.\n\nThis is a sentence.\n\nMore."
        assert "#" not in detect_headers(text)


class TestSeparateParagraphs:

    def test_joins_wrapped_lines(self):
        text = "This paragraph was\nhard wrapped by the\nPDF writer."
        assert separate_paragraphs(text) == "This paragraph was hard wrapped by the PDF writer."

    def test_sentence_end_before_capital_splits(self):
        text = "First sentence ends.\nSecond starts here."
        assert separate_paragraphs(text) == "First sentence ends.\n\nSecond starts here."

    def test_list_items_stay_together(self):
        text = "Intro line\n- one\n- two\nAfter list"
        assert separate_paragraphs(text) == "Intro line\n\n- one\n- two\n\nAfter list"

    def test_headers_get_their_own_block(self):
        assert separate_paragraphs("# Title\nBody") == "# Title\n\nBody"


class TestMarkdownOutput:

    def test_clean_markdown_collapses_blank_runs(self):
        assert clean_markdown("a\n\n\n\nb   \n") == "a\n\nb\n"

    def test_clean_markdown_empty(self):
        assert clean_markdown("   \n") == ""

    def test_multi_page_note(self):
        assert text_to_markdown("Body text.", page_count=3).startswith("> Extracted from a 3-page PDF")
        assert not text_to_markdown("Body text.", page_count=1).startswith(">")

    def test_metadata_block(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        block = build_metadata_block({"source_file": "a.pdf", "author": None, "pages": 2}, now=now)
        lines = block.split("\n")

        assert lines[0] == "---" and lines[-1] == "---"
        assert "source_file: a.pdf" in lines
        assert "pages: 2" in lines
        assert "generated_by: docsync" in lines
        assert "generated_at: 2024-05-01T12:00:00+00:00" in lines
        assert not any(line.startswith("author") for line in lines)

    def test_add_metadata_prefixes_body(self):
        result = add_metadata("# Body", {"source_file": "a.docx"})
        assert result.startswith("---\n")
        assert result.endswith("---\n\n# Body")
