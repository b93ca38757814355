"""Block-level Markdown parser producing the document node tree."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .nodes import (
    Block,
    Blockquote,
    CodeBlock,
    DefinitionDetails,
    DefinitionItem,
    DefinitionList,
    DefinitionTerm,
    FootnoteDefinition,
    Heading,
    ListBlock,
    ListItem,
    Paragraph,
    ParsedDocument,
    Root,
    SourceMap,
    Span,
    Table,
    TableCell,
    TableRow,
    ThematicBreak,
)

logger = logging.getLogger(__name__)

# Containers nested deeper than this are read as paragraph text.
MAX_NESTING_DEPTH = 32


class BlockParser:
    """Parse raw Markdown text into a block tree plus a footnote side table."""

    def __init__(self, max_depth: int = MAX_NESTING_DEPTH) -> None:
        self.max_depth = max_depth
        self._footnotes: dict[str, FootnoteDefinition] = {}

    def parse(self, text: str | bytes) -> ParsedDocument:
        text = normalize_text(text)
        self._footnotes = {}

        lines = _split_lines(text)
        children = self._parse_lines(lines, depth=0)
        root = Root(children=children, span=Span(0, len(text)))
        return ParsedDocument(root=root, footnotes=self._footnotes)

    # -----------------------------------------------------------------------
    # Block dispatch
    # -----------------------------------------------------------------------

    def _parse_lines(self, lines: list[_Line], depth: int) -> list[Block]:
        blocks: list[Block] = []
        nested_ok = depth < self.max_depth
        i = 0
        n = len(lines)

        while i < n:
            line = lines[i]
            if line.is_blank():
                i += 1
                continue

            if line.indent() >= 4:
                block, i = _parse_indented_code(lines, i)
                blocks.append(block)
                continue

            fence = _match_fence(line.text)
            if fence:
                block, i = _parse_fence(lines, i, fence)
                blocks.append(block)
                continue

            if _MATH_OPEN_RE.match(line.text):
                block, j = _parse_math_block(lines, i)
                if block is not None:
                    blocks.append(block)
                    i = j
                    continue

            atx = _ATX_RE.match(line.text)
            if atx:
                blocks.append(_make_atx_heading(line, atx))
                i += 1
                continue

            if _THEMATIC_RE.match(line.text):
                blocks.append(ThematicBreak(span=Span(line.start, line.end)))
                i += 1
                continue

            if nested_ok and _BLOCKQUOTE_RE.match(line.text):
                block, i = self._parse_blockquote(lines, i, depth)
                blocks.append(block)
                continue

            footnote = _FOOTNOTE_DEF_RE.match(line.text) if nested_ok else None
            if footnote:
                i = self._parse_footnote_definition(lines, i, footnote, depth)
                continue

            item = _LIST_ITEM_RE.match(line.text) if nested_ok else None
            if item:
                block, i = self._parse_list(lines, i, depth)
                blocks.append(block)
                continue

            table, j = _parse_table(lines, i)
            if table is not None:
                blocks.append(table)
                i = j
                continue

            if i + 1 < n and _DEFINITION_RE.match(lines[i + 1].text):
                deflist, j = self._parse_definition_list(lines, i, depth)
                if deflist is not None:
                    blocks.append(deflist)
                    i = j
                    continue

            block, i = self._parse_paragraph(lines, i, depth)
            blocks.append(block)

        return blocks

    def _interrupts_paragraph(self, line: _Line, depth: int) -> bool:
        text = line.text
        if line.indent() >= 4:
            return False
        if _match_fence(text) or _ATX_RE.match(text) or _THEMATIC_RE.match(text):
            return True
        if depth >= self.max_depth:
            return False
        if _BLOCKQUOTE_RE.match(text) or _FOOTNOTE_DEF_RE.match(text):
            return True
        item = _LIST_ITEM_RE.match(text)
        if item and text[item.end():].strip():
            number = item.group(3)
            return number is None or int(number) == 1
        return False

    # -----------------------------------------------------------------------
    # Paragraphs and setext headings
    # -----------------------------------------------------------------------

    def _parse_paragraph(self, lines: list[_Line], i: int, depth: int) -> tuple[Block, int]:
        para = [lines[i]]
        j = i + 1
        while j < len(lines):
            line = lines[j]
            if line.is_blank():
                break
            setext = _SETEXT_RE.match(line.text)
            if setext:
                raw, source_map = _leaf_text(para)
                level = 1 if setext.group(1).startswith("=") else 2
                heading = Heading(
                    level=level,
                    raw=raw,
                    source_map=source_map,
                    span=Span(para[0].start, line.end),
                )
                return heading, j + 1
            if self._interrupts_paragraph(line, depth):
                break
            para.append(line)
            j += 1

        raw, source_map = _leaf_text(para)
        return Paragraph(raw=raw, source_map=source_map, span=Span(para[0].start, para[-1].end)), j

    # -----------------------------------------------------------------------
    # Blockquotes and callouts
    # -----------------------------------------------------------------------

    def _parse_blockquote(self, lines: list[_Line], i: int, depth: int) -> tuple[Blockquote, int]:
        inner: list[_Line] = []
        j = i
        while j < len(lines):
            line = lines[j]
            marker = _BLOCKQUOTE_RE.match(line.text)
            if marker:
                inner.append(line.advance(marker.end()))
                j += 1
                continue
            if line.is_blank() or not inner or inner[-1].is_blank():
                break
            if self._interrupts_paragraph(line, depth):
                break
            # Lazy continuation of the quoted paragraph.
            inner.append(line)
            j += 1

        callout = None
        callout_title = None
        if inner:
            match = _CALLOUT_RE.match(inner[0].text)
            if match:
                callout = match.group(1).capitalize()
                callout_title = match.group(2).strip() or None
                inner = inner[1:]

        children = self._parse_lines(inner, depth + 1)
        block = Blockquote(
            children=children,
            callout=callout,
            callout_title=callout_title,
            span=Span(lines[i].start, lines[j - 1].end),
        )
        return block, j

    # -----------------------------------------------------------------------
    # Lists
    # -----------------------------------------------------------------------

    def _parse_list(self, lines: list[_Line], i: int, depth: int) -> tuple[ListBlock, int]:
        first = _LIST_ITEM_RE.match(lines[i].text)
        kind = _list_kind(first)
        ordered = first.group(3) is not None
        start = int(first.group(3)) if ordered else 1

        items: list[ListItem] = []
        j = i
        n = len(lines)
        while j < n:
            match = _LIST_ITEM_RE.match(lines[j].text)
            if not match or _list_kind(match) != kind or _THEMATIC_RE.match(lines[j].text):
                break
            item, j = self._parse_list_item(lines, j, match, depth)
            items.append(item)

            k = j
            while k < n and lines[k].is_blank():
                k += 1
            if k < n and not _THEMATIC_RE.match(lines[k].text):
                following = _LIST_ITEM_RE.match(lines[k].text)
                if following and _list_kind(following) == kind:
                    j = k
                    continue
            break

        block = ListBlock(
            ordered=ordered,
            task=any(item.checked is not None for item in items),
            start=start,
            children=items,
            span=Span(items[0].span.start, items[-1].span.end),
        )
        return block, j

    def _parse_list_item(
        self, lines: list[_Line], i: int, match: re.Match[str], depth: int
    ) -> tuple[ListItem, int]:
        line = lines[i]
        spacing = match.group(5) or ""
        if not spacing or len(spacing.expandtabs(4)) > 4:
            content_offset = match.end(2) + min(len(spacing), 1)
        else:
            content_offset = match.end()
        content_indent = _column_width(line.text[:content_offset])

        first = line.advance(content_offset)
        checked = None
        task = _TASK_RE.match(first.text)
        if task:
            checked = task.group(1) in "xX"
            first = first.advance(task.end())

        item_lines = [first]
        last_end = line.end
        j = i + 1
        n = len(lines)
        while j < n:
            nxt = lines[j]
            if nxt.is_blank():
                k = j
                while k < n and lines[k].is_blank():
                    k += 1
                if k < n and lines[k].indent() >= content_indent and not item_lines[0].is_blank():
                    item_lines.extend(blank.strip_indent(content_indent) for blank in lines[j:k])
                    j = k
                    continue
                break
            if nxt.indent() >= content_indent:
                item_lines.append(nxt.strip_indent(content_indent))
            elif (
                not item_lines[-1].is_blank()
                and not _LIST_ITEM_RE.match(nxt.text)
                and not self._interrupts_paragraph(nxt, depth)
            ):
                item_lines.append(nxt)
            else:
                break
            last_end = nxt.end
            j += 1

        children = self._parse_lines(item_lines, depth + 1)
        return ListItem(children=children, checked=checked, span=Span(line.start, last_end)), j

    # -----------------------------------------------------------------------
    # Footnote definitions
    # -----------------------------------------------------------------------

    def _parse_footnote_definition(
        self, lines: list[_Line], i: int, match: re.Match[str], depth: int
    ) -> int:
        line = lines[i]
        label = match.group(1)
        body = [line.advance(match.start(2))]
        last_end = line.end
        j = i + 1
        n = len(lines)
        while j < n:
            nxt = lines[j]
            if nxt.is_blank():
                k = j
                while k < n and lines[k].is_blank():
                    k += 1
                if k < n and lines[k].indent() >= 4:
                    body.extend(blank.strip_indent(4) for blank in lines[j:k])
                    j = k
                    continue
                break
            if nxt.indent() >= 4:
                body.append(nxt.strip_indent(4))
            elif not body[-1].is_blank() and not self._interrupts_paragraph(nxt, depth):
                body.append(nxt)
            else:
                break
            last_end = nxt.end
            j += 1

        definition = FootnoteDefinition(
            label=label,
            children=self._parse_lines(body, depth + 1),
            span=Span(line.start, last_end),
        )
        if label in self._footnotes:
            logger.debug("Ignoring duplicate footnote definition [^%s]", label)
        else:
            self._footnotes[label] = definition
        return j

    # -----------------------------------------------------------------------
    # Definition lists
    # -----------------------------------------------------------------------

    def _parse_definition_list(
        self, lines: list[_Line], i: int, depth: int
    ) -> tuple[DefinitionList | None, int]:
        items: list[DefinitionItem] = []
        j = i
        n = len(lines)
        while j + 1 < n:
            term_line = lines[j]
            if term_line.is_blank() or not _DEFINITION_RE.match(lines[j + 1].text):
                break
            if self._interrupts_paragraph(term_line, depth) or _DEFINITION_RE.match(term_line.text):
                break

            raw, source_map = _leaf_text([term_line])
            children: list[DefinitionTerm | DefinitionDetails] = [
                DefinitionTerm(raw=raw, source_map=source_map, span=Span(term_line.start, term_line.end))
            ]
            groups: list[list[_Line]] = []
            k = j + 1
            while k < n:
                line = lines[k]
                definition = _DEFINITION_RE.match(line.text)
                if definition:
                    groups.append([line.advance(definition.start(1))])
                elif groups and not line.is_blank() and line.indent() >= 2:
                    groups[-1].append(line)
                else:
                    break
                k += 1

            for group in groups:
                raw, source_map = _leaf_text(group)
                children.append(
                    DefinitionDetails(raw=raw, source_map=source_map, span=Span(group[0].start, group[-1].end))
                )
            items.append(DefinitionItem(children=children, span=Span(term_line.start, lines[k - 1].end)))
            j = k

            m = j
            while m < n and lines[m].is_blank():
                m += 1
            if m + 1 < n and _DEFINITION_RE.match(lines[m + 1].text):
                j = m
                continue
            break

        if not items:
            return None, i
        return DefinitionList(children=items, span=Span(items[0].span.start, items[-1].span.end)), j


# ---------------------------------------------------------------------------
# Text normalization and line bookkeeping
# ---------------------------------------------------------------------------

def normalize_text(text: str | bytes) -> str:
    """Decode and normalize raw document text (newlines, NUL characters)."""
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "\ufffd")


@dataclass(slots=True, frozen=True)
class _Line:
    text: str
    start: int

    @property
    def end(self) -> int:
        return self.start + len(self.text)

    def is_blank(self) -> bool:
        return not self.text.strip()

    def indent(self) -> int:
        return _column_width(self.text[: len(self.text) - len(self.text.lstrip(" \t"))])

    def advance(self, count: int) -> _Line:
        count = min(count, len(self.text))
        return _Line(self.text[count:], self.start + count)

    def strip_indent(self, width: int) -> _Line:
        column = 0
        count = 0
        for ch in self.text:
            if column >= width or ch not in " \t":
                break
            column += 4 - (column % 4) if ch == "\t" else 1
            count += 1
        return self.advance(count)

    def lstrip(self) -> _Line:
        return self.advance(len(self.text) - len(self.text.lstrip(" \t")))


def _split_lines(text: str) -> list[_Line]:
    lines: list[_Line] = []
    pos = 0
    for chunk in text.split("\n"):
        lines.append(_Line(chunk, pos))
        pos += len(chunk) + 1
    return lines


def _column_width(prefix: str) -> int:
    column = 0
    for ch in prefix:
        column += 4 - (column % 4) if ch == "\t" else 1
    return column


def _leaf_text(lines: list[_Line]) -> tuple[str, SourceMap]:
    """Join leaf lines into inline text plus its source map."""
    parts: list[str] = []
    segments: list[tuple[int, int]] = []
    pos = 0
    for line in lines:
        stripped = line.lstrip()
        text = stripped.text.rstrip()
        segments.append((pos, stripped.start))
        parts.append(text)
        pos += len(text) + 1
    return "\n".join(parts), SourceMap(tuple(segments) or ((0, 0),))


# ---------------------------------------------------------------------------
# Headings
# ---------------------------------------------------------------------------

_ATX_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?[ \t]*$")
_ATX_CLOSING_RE = re.compile(r"(?:^|[ \t]+)#+[ \t]*$")
_SETEXT_RE = re.compile(r"^ {0,3}(=+|-+)[ \t]*$")
_THEMATIC_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")


def _make_atx_heading(line: _Line, match: re.Match[str]) -> Heading:
    level = len(match.group(1))
    content = match.group(2) or ""
    content = _ATX_CLOSING_RE.sub("", content)
    offset = line.start + (match.start(2) if match.group(2) is not None else match.end(1))
    return Heading(
        level=level,
        raw=content,
        source_map=SourceMap(((0, offset),)),
        span=Span(line.start, line.end),
    )


# ---------------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^( {0,3})(`{3,}|~{3,})(.*)$")

_LANGUAGE_ALIASES = {
    "rs": "rust",
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "ts": "typescript",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "fish": "bash",
    "pwsh": "powershell",
    "ps1": "powershell",
    "cs": "csharp",
    "c#": "csharp",
    "c++": "cpp",
    "h": "c",
    "h++": "cpp",
    "hpp": "cpp",
    "golang": "go",
    "kt": "kotlin",
    "kts": "kotlin",
    "rb": "ruby",
    "pl": "perl",
    "jl": "julia",
    "ex": "elixir",
    "exs": "elixir",
    "erl": "erlang",
    "hs": "haskell",
    "ml": "ocaml",
    "sol": "solidity",
    "yml": "yaml",
    "md": "markdown",
    "gql": "graphql",
    "proto": "protobuf",
    "dockerfile": "docker",
    "make": "makefile",
    "patch": "diff",
    "latex": "tex",
    "plaintext": "text",
    "txt": "text",
}


def normalize_language(tag: str) -> str | None:
    """Map a fence info word (``{.python}``, ``language-rs``, ``golang``) to a canonical name."""
    tag = tag.strip().strip("{}").lstrip(".").strip()
    if tag.lower().startswith("language-"):
        tag = tag[len("language-"):]
    tag = tag.strip().lower()
    if not tag:
        return None
    return _LANGUAGE_ALIASES.get(tag, tag)


def _match_fence(text: str) -> re.Match[str] | None:
    match = _FENCE_RE.match(text)
    if match and match.group(2)[0] == "`" and "`" in match.group(3):
        return None
    return match


def _is_fence_close(text: str, marker: str) -> bool:
    stripped = text.lstrip(" ")
    if len(text) - len(stripped) > 3:
        return False
    run = len(stripped) - len(stripped.lstrip(marker[0]))
    return run >= len(marker) and not stripped[run:].strip()


def _parse_fence(lines: list[_Line], i: int, match: re.Match[str]) -> tuple[CodeBlock, int]:
    indent = len(match.group(1))
    marker = match.group(2)
    info = match.group(3).strip()

    body: list[str] = []
    j = i + 1
    end = lines[i].end
    while j < len(lines):
        line = lines[j]
        end = line.end
        if _is_fence_close(line.text, marker):
            j += 1
            break
        body.append(line.strip_indent(indent).text)
        j += 1

    words = info.split()
    language = normalize_language(words[0]) if words else None
    block = CodeBlock(
        language=language,
        content="\n".join(body),
        info=info,
        span=Span(lines[i].start, end),
    )
    return block, j


def _parse_indented_code(lines: list[_Line], i: int) -> tuple[CodeBlock, int]:
    body: list[_Line] = []
    j = i
    while j < len(lines) and (lines[j].is_blank() or lines[j].indent() >= 4):
        body.append(lines[j])
        j += 1
    while body and body[-1].is_blank():
        body.pop()
    j = i + len(body)
    content = "\n".join(line.strip_indent(4).text for line in body)
    return CodeBlock(language=None, content=content, span=Span(body[0].start, body[-1].end)), j


# ---------------------------------------------------------------------------
# Display math blocks
# ---------------------------------------------------------------------------

_MATH_OPEN_RE = re.compile(r"^ {0,3}\$\$")


def _parse_math_block(lines: list[_Line], i: int) -> tuple[Paragraph | None, int]:
    """Keep a ``$$`` ... ``$$`` block together even across blank lines."""
    opener = lines[i].lstrip()
    if "$$" in opener.text[2:]:
        return None, i
    j = i + 1
    while j < len(lines):
        if "$$" in lines[j].text:
            block_lines = lines[i : j + 1]
            raw, source_map = _leaf_text(block_lines)
            return Paragraph(raw=raw, source_map=source_map, span=Span(lines[i].start, lines[j].end)), j + 1
        j += 1
    return None, i


# ---------------------------------------------------------------------------
# Container markers
# ---------------------------------------------------------------------------

_BLOCKQUOTE_RE = re.compile(r"^ {0,3}> ?")
_CALLOUT_RE = re.compile(r"^[ \t]*\[!([A-Za-z][\w-]*)\][ \t]*(.*)$")
_LIST_ITEM_RE = re.compile(r"^( {0,3})([-+*]|(\d{1,9})([.)]))(?=[ \t]|$)([ \t]*)")
_TASK_RE = re.compile(r"^\[([ xX])\](?:[ \t]+|$)")
_FOOTNOTE_DEF_RE = re.compile(r"^ {0,3}\[\^([^\]\s]+)\]:[ \t]*(.*)$")
_DEFINITION_RE = re.compile(r"^ {0,3}:[ \t]+(\S.*)$")


def _list_kind(match: re.Match[str]) -> str:
    return match.group(4) or match.group(2)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

_TABLE_SEPARATOR_RE = re.compile(r"^ {0,3}\|?[ \t]*:?-+:?[ \t]*(?:\|[ \t]*:?-+:?[ \t]*)*\|?[ \t]*$")


def _parse_table(lines: list[_Line], i: int) -> tuple[Table | None, int]:
    """Parse a pipe table; anything malformed is left for paragraph parsing."""
    if i + 1 >= len(lines):
        return None, i
    header_line = lines[i]
    separator = lines[i + 1]
    if "|" not in header_line.text or not _TABLE_SEPARATOR_RE.match(separator.text):
        return None, i

    alignments = [_alignment(text) for text, _ in _split_row(separator)]
    header_cells = _split_row(header_line)
    if len(header_cells) != len(alignments):
        return None, i
    if len(header_cells) == 1 and "|" not in separator.text:
        # A bare dash line under a one-cell header is a setext underline.
        return None, i

    rows = [_make_row(header_line, header_cells, alignments, header=True)]
    end = separator.end
    j = i + 2
    while j < len(lines):
        line = lines[j]
        if line.is_blank() or "|" not in line.text:
            break
        if _match_fence(line.text) or _ATX_RE.match(line.text) or _BLOCKQUOTE_RE.match(line.text):
            break
        cells = _split_row(line)
        if len(cells) != len(alignments):
            logger.debug("Table row at offset %d has %d cells, expected %d", line.start, len(cells), len(alignments))
            break
        rows.append(_make_row(line, cells, alignments, header=False))
        end = line.end
        j += 1

    return Table(children=rows, alignments=alignments, span=Span(header_line.start, end)), j


def _split_row(line: _Line) -> list[tuple[str, int]]:
    """Split a table row on unescaped pipes into ``(cell_text, document_offset)``."""
    text = line.text
    lo = len(text) - len(text.lstrip())
    hi = len(text.rstrip())
    if lo < hi and text[lo] == "|":
        lo += 1
    if hi > lo and text[hi - 1] == "|" and (hi < 2 or text[hi - 2] != "\\"):
        hi -= 1

    cells: list[tuple[str, int]] = []
    cell_start = lo
    idx = lo
    while idx < hi:
        ch = text[idx]
        if ch == "\\":
            idx += 2
            continue
        if ch == "|":
            cells.append(_trim_cell(text, cell_start, idx, line.start))
            cell_start = idx + 1
        idx += 1
    cells.append(_trim_cell(text, cell_start, hi, line.start))
    return cells


def _trim_cell(text: str, lo: int, hi: int, base: int) -> tuple[str, int]:
    hi = min(hi, len(text))
    while lo < hi and text[lo] in " \t":
        lo += 1
    while hi > lo and text[hi - 1] in " \t":
        hi -= 1
    return text[lo:hi], base + lo


def _alignment(cell: str) -> str | None:
    left = cell.startswith(":")
    right = cell.endswith(":")
    if left and right:
        return "center"
    if right:
        return "right"
    if left:
        return "left"
    return None


def _make_row(line: _Line, cells: list[tuple[str, int]], alignments: list[str | None], *, header: bool) -> TableRow:
    children = [
        TableCell(
            raw=text,
            source_map=SourceMap(((0, offset),)),
            align=align,
            span=Span(offset, offset + len(text)),
        )
        for (text, offset), align in zip(cells, alignments)
    ]
    return TableRow(children=children, header=header, span=Span(line.start, line.end))
