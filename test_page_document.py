#!/usr/bin/env python3
# Copyright (c) 2026 ngpestelos
# Licensed under the MIT License - see LICENSE file for details
"""
Tests for Markdown page blocks and highlight insertion
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent))
from page_document import (
    MarkdownPageDocument, text_block, render_block, parse_block,
    insert_highlights, book_title, CONFLICT_MESSAGE
)
from readwise_sync import InsertionConflictError


class TestBlockRendering:
    """Test block <-> Markdown line conversion"""

    def test_render_title(self):
        assert render_block(text_block("My Book", text_style="title")) == "# My Book"

    def test_render_indented_bullet(self):
        block = text_block("a highlight", list_style="bullet", indentation_level=1)
        assert render_block(block) == "  - a highlight"

    def test_render_plain(self):
        assert render_block(text_block("plain text")) == "plain text"

    def test_render_multiline_content(self):
        block = text_block("line one\nline two", list_style="bullet")
        assert render_block(block) == "- line one<br>line two"

    def test_parse_bullet(self):
        block = parse_block("    - deep", "block-0")
        assert block.list_style == "bullet"
        assert block.indentation_level == 2
        assert block.content == "deep"

    def test_parse_title(self):
        block = parse_block("# Heading", "block-3")
        assert block.text_style == "title"
        assert block.content == "Heading"
        assert block.id == "block-3"

    def test_parse_restores_newlines(self):
        assert parse_block("- a<br>b", "block-0").content == "a\nb"

    def test_parse_indented_hash_is_plain(self):
        block = parse_block("  # not a title", "block-0")
        assert block.text_style is None
        assert block.content == "# not a title"

    @pytest.mark.parametrize("block", [
        text_block("# looks like a heading"),
        text_block("- looks like a bullet"),
        text_block("  leading spaces"),
        text_block("a literal <br> tag", list_style="bullet"),
        text_block("back\\slash\\", text_style="title"),
        text_block("ends with backslash\\\nthen more", list_style="bullet", indentation_level=1),
    ])
    def test_block_text_survives_a_write(self, block):
        parsed = parse_block(render_block(block), "block-0")
        assert parsed.content == block.content
        assert parsed.list_style == block.list_style
        assert parsed.text_style == block.text_style
        assert parsed.indentation_level == block.indentation_level

    def test_carriage_returns_become_line_breaks(self):
        block = text_block("one\r\ntwo\rthree", list_style="bullet")
        assert render_block(block) == "- one<br>two<br>three"
        assert parse_block(render_block(block), "block-0").content == "one\ntwo\nthree"


class TestMarkdownPageDocument:
    """Test reading and writing a page file"""

    def test_missing_file_is_empty_page(self, tmp_path):
        page = MarkdownPageDocument(tmp_path / "none.md").get_current_page()
        assert page.content == ""
        assert page.subblocks == []

    def test_frontmatter_title_is_page_content(self, tmp_path):
        path = tmp_path / "page.md"
        path.write_text('---\ntitle: Meeting notes\n---\n\nfirst line\n- bullet\n')

        page = MarkdownPageDocument(path).get_current_page()

        assert page.content == "Meeting notes"
        assert [b.content for b in page.subblocks] == ["first line", "bullet"]
        assert [b.id for b in page.subblocks] == ["block-1", "block-2"]

    def test_add_blocks_appends(self, tmp_path):
        path = tmp_path / "page.md"
        doc = MarkdownPageDocument(path)
        doc.add_blocks([text_block("one")])
        doc.add_blocks([text_block("two", list_style="bullet")])

        assert path.read_text() == "one\n- two\n"

    def test_add_blocks_keeps_frontmatter(self, tmp_path):
        path = tmp_path / "page.md"
        path.write_text('---\ntitle: Keep me\ntags:\n- reading\n---\n\nbody\n')

        MarkdownPageDocument(path).add_blocks([text_block("more")])
        page = MarkdownPageDocument(path).get_current_page()

        assert page.content == "Keep me"
        assert page.metadata["tags"] == ["reading"]
        assert [b.content for b in page.subblocks] == ["body", "more"]

    def test_delete_blocks(self, tmp_path):
        path = tmp_path / "page.md"
        path.write_text("a\nb\nc\n")
        doc = MarkdownPageDocument(path)

        doc.delete_blocks(["block-0", "block-2"])

        assert path.read_text() == "b\n"

    def test_empty_frontmatter(self, tmp_path):
        path = tmp_path / "page.md"
        path.write_text("---\n---\nbody\n")

        page = MarkdownPageDocument(path).get_current_page()

        assert page.content == ""
        assert page.metadata == {}
        assert [b.content for b in page.subblocks] == ["body"]

    def test_delete_keeps_rest_of_file(self, tmp_path):
        path = tmp_path / "page.md"
        original = "---\nzeta: 1\nalpha: 2\n---\n\nkeep\n\ndrop\n"
        path.write_text(original)
        doc = MarkdownPageDocument(path)

        drop = [b.id for b in doc.get_current_page().subblocks if b.content == "drop"]
        doc.delete_blocks(drop)

        assert path.read_text() == "---\nzeta: 1\nalpha: 2\n---\n\nkeep\n\n"

    def test_add_blocks_to_file_without_trailing_newline(self, tmp_path):
        path = tmp_path / "page.md"
        path.write_text("last line")
        MarkdownPageDocument(path).add_blocks([text_block("next")])
        assert path.read_text() == "last line\nnext\n"

    def test_delete_nothing_does_not_create_file(self, tmp_path):
        path = tmp_path / "page.md"
        MarkdownPageDocument(path).delete_blocks([])
        assert not path.exists()


class TestInsertHighlights:
    """Test inserting a book's highlights into a page"""

    def test_insert_into_empty_page(self, tmp_path, aggregate):
        path = tmp_path / "Books" / "page.md"
        doc = MarkdownPageDocument(path)

        count = insert_highlights(doc, aggregate)

        assert count == 2
        assert path.read_text() == (
            "# The Phoenix Project\n"
            "  - Improving daily work is more important than doing daily work.\n"
            "  - Any improvement not made at the bottleneck is an illusion.\n"
        )

    def test_insert_replaces_existing_subblocks(self, tmp_path, aggregate):
        path = tmp_path / "page.md"
        path.write_text("stale line\n- stale bullet\n")

        insert_highlights(MarkdownPageDocument(path), aggregate)
        page = MarkdownPageDocument(path).get_current_page()

        assert page.subblocks[0].text_style == "title"
        assert page.subblocks[0].content == "The Phoenix Project"
        assert all(b.list_style == "bullet" and b.indentation_level == 1 for b in page.subblocks[1:])
        assert "stale" not in path.read_text()

    def test_conflict_adds_warning_only(self, tmp_path, aggregate):
        path = tmp_path / "page.md"
        path.write_text('---\ntitle: My own notes\n---\n\nsomething I wrote\n')

        with pytest.raises(InsertionConflictError):
            insert_highlights(MarkdownPageDocument(path), aggregate)

        page = MarkdownPageDocument(path).get_current_page()
        assert [b.content for b in page.subblocks] == ["something I wrote", CONFLICT_MESSAGE]
        assert "Improving daily work" not in path.read_text()

    def test_conflict_leaves_note_untouched(self, tmp_path, aggregate):
        path = tmp_path / "page.md"
        original = (
            "---\n"
            "zeta: last key first\n"
            "title: My own notes\n"
            "alpha: 1\n"
            "---\n"
            "\n"
            "first paragraph\n"
            "\n"
            "\n"
            "second paragraph"
        )
        path.write_text(original)

        with pytest.raises(InsertionConflictError):
            insert_highlights(MarkdownPageDocument(path), aggregate)

        assert path.read_text() == original + "\n" + CONFLICT_MESSAGE + "\n"

    def test_unknown_book_title_fallback(self, tmp_path):
        orphan = {"id": 42, "book": None, "highlights": [{"id": 1, "book_id": 42, "text": "x"}],
                  "imported": False}
        assert book_title(orphan) == "Book 42"

        path = tmp_path / "page.md"
        insert_highlights(MarkdownPageDocument(path), orphan)
        assert path.read_text().startswith("# Book 42\n")


@pytest.fixture
def aggregate():
    return {
        "id": 1,
        "book": {"id": 1, "title": "The Phoenix Project", "author": "Gene Kim"},
        "highlights": [
            {"id": 101, "book_id": 1, "text": "Improving daily work is more important than doing daily work."},
            {"id": 103, "book_id": 1, "text": "Any improvement not made at the bottleneck is an illusion."},
        ],
        "imported": False,
    }


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
