# Copyright (c) 2026 ngpestelos
# Licensed under the MIT License - see LICENSE file for details
"""
Markdown page as a block document.

A page is a single .md file. YAML frontmatter holds page metadata (its
`title` is the page's own content), every non-empty body line is one block.
Inside a block, a line break is written as `<br>` and backslash escapes a
literal backslash, `<br>` or a leading marker.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from readwise_sync import Aggregate, InsertionConflictError

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Already content on this page"
INDENT = "  "
LINE_BREAK = "<br>"

_BLOCK_RE = re.compile(r'^(?P<indent>(?:  )*)(?P<marker># |- )?(?P<text>.*)$')
_ESCAPE_RE = re.compile(r"\\(\\|<br>|[#\- ])|<br>")
_FRONTMATTER_RE = re.compile(r"\A---\n(.*?\n)?---\n", re.DOTALL)


@dataclass
class Block:
    """A single line of text on a page."""

    id: str
    content: str
    list_style: Optional[str] = None  # "bullet"
    indentation_level: int = 0
    text_style: Optional[str] = None  # "title"


@dataclass
class Page:
    content: str = ""
    subblocks: List[Block] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)


def text_block(content: str, list_style: Optional[str] = None, indentation_level: int = 0,
               text_style: Optional[str] = None) -> Block:
    """Build a block that has not been added to a page yet"""
    return Block(
        id="",
        content=content,
        list_style=list_style,
        indentation_level=indentation_level,
        text_style=text_style,
    )


def render_block(block: Block) -> str:
    text = block.content.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\\", "\\\\").replace(LINE_BREAK, "\\" + LINE_BREAK).replace("\n", LINE_BREAK)
    if block.text_style == "title":
        return f"# {text}"
    prefix = INDENT * block.indentation_level
    if block.list_style == "bullet":
        return f"{prefix}- {text}"
    if text.startswith(("# ", "- ", " ")):
        text = "\\" + text
    return f"{prefix}{text}"


def _unescape(text: str) -> str:
    return _ESCAPE_RE.sub(lambda m: m.group(1) or "\n", text)


def parse_block(line: str, block_id: str) -> Block:
    match = _BLOCK_RE.match(line)
    text = match.group("text")
    indentation_level = len(match.group("indent")) // len(INDENT)
    marker = match.group("marker")

    if marker == "# " and indentation_level == 0:
        return Block(id=block_id, content=_unescape(text), text_style="title")
    if marker == "- ":
        return Block(id=block_id, content=_unescape(text), list_style="bullet",
                     indentation_level=indentation_level)
    if marker:
        text = marker + text
    return Block(id=block_id, content=_unescape(text), indentation_level=indentation_level)


class MarkdownPageDocument:
    """
    Block document backed by one Markdown file.

    Edits touch only the lines they add or remove; frontmatter, blank lines
    and everything else in the file stay byte for byte.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> str:
        if not self.path.exists():
            return ""
        with open(self.path, 'r', newline='') as f:
            return f.read()

    def _write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', newline='') as f:
            f.write(text)

    @staticmethod
    def _split(text: str):
        """Split file text into (frontmatter head, metadata, body)"""
        match = _FRONTMATTER_RE.match(text)
        if not match:
            return "", {}, text
        metadata = yaml.safe_load(match.group(1) or "") or {}
        if not isinstance(metadata, dict):
            metadata = {}
        return match.group(0), metadata, text[match.end():]

    def get_current_page(self) -> Page:
        head, metadata, body = self._split(self._read())

        # ids are body line numbers, so blank lines still count
        subblocks = [
            parse_block(line, f"block-{i}")
            for i, line in enumerate(body.splitlines())
            if line.strip()
        ]

        title = metadata.get("title") or ""
        return Page(content=str(title), subblocks=subblocks, metadata=metadata)

    def delete_blocks(self, block_ids: Iterable[str]) -> None:
        doomed = set(block_ids)
        if not doomed or not self.path.exists():
            return
        head, _, body = self._split(self._read())
        kept = [
            line for i, line in enumerate(body.splitlines(keepends=True))
            if f"block-{i}" not in doomed
        ]
        self._write(head + "".join(kept))

    def add_blocks(self, blocks: List[Block]) -> None:
        text = self._read()
        if text and not text.endswith("\n"):
            text += "\n"
        text += "".join(render_block(block) + "\n" for block in blocks)
        self._write(text)


def book_title(aggregate: Aggregate) -> str:
    book = aggregate.get("book") or {}
    return book.get("title") or f"Book {aggregate['id']}"


def insert_highlights(document, aggregate: Aggregate) -> int:
    """
    Write a book's highlights onto the current page.

    Pages that already have content are left alone: a warning block is
    appended and InsertionConflictError is raised. Otherwise existing
    sub-blocks are replaced by a title heading followed by one indented
    bullet per highlight.

    Returns:
        Number of highlight blocks written
    """
    page = document.get_current_page()

    if page.content:
        document.add_blocks([text_block(CONFLICT_MESSAGE)])
        logger.warning(f"Not inserting '{book_title(aggregate)}': page already has content")
        raise InsertionConflictError(CONFLICT_MESSAGE)

    document.delete_blocks([b.id for b in page.subblocks])

    header_block = text_block(book_title(aggregate), text_style="title")
    highlight_blocks = [
        text_block(highlight.get("text", ""), list_style="bullet", indentation_level=1)
        for highlight in aggregate["highlights"]
    ]
    document.add_blocks([header_block] + highlight_blocks)

    logger.info(f"Inserted {len(highlight_blocks)} highlights from '{book_title(aggregate)}'")
    return len(highlight_blocks)
