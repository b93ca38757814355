"""Tests for the block parser.

Covers:
- ATX and setext headings
- Fenced and indented code blocks, language aliases
- Display math blocks ($$ ... $$)
- Blockquotes and callouts ([!KIND], unknown kinds, titles)
- Bullet, ordered and task lists, nesting
- Footnote definitions (side table, first definition wins)
- Definition lists
- Tables (alignment, escaped pipes, malformed rows)
- Input normalization, totality and determinism
"""

from __future__ import annotations

import random

from markview.parser.block_parser import BlockParser, normalize_language, normalize_text
from markview.parser.nodes import (
    Blockquote,
    CodeBlock,
    DefinitionList,
    Heading,
    ListBlock,
    Paragraph,
    Root,
    Table,
    ThematicBreak,
)


def parse(text: str | bytes):
    return BlockParser().parse(text)


# ---------------------------------------------------------------------------
# Headings
# ---------------------------------------------------------------------------

def test_atx_and_setext_headings() -> None:
    doc = parse("# Title\n\nIntro\n===\n\nSub\n---\n\n## Closed ##\n")
    headings = doc.root.children
    assert [type(b) for b in headings] == [Heading, Heading, Heading, Heading]
    assert [(h.level, h.raw) for h in headings] == [(1, "Title"), (1, "Intro"), (2, "Sub"), (2, "Closed")]


def test_heading_source_map_points_at_heading_text() -> None:
    doc = parse("para\n\n### Deep\n")
    heading = doc.root.children[1]
    assert isinstance(heading, Heading)
    assert heading.source_map.to_source(0) == len("para\n\n### ")


def test_thematic_break_between_paragraphs() -> None:
    doc = parse("a\n\n***\n\nb")
    assert [type(b) for b in doc.root.children] == [Paragraph, ThematicBreak, Paragraph]


# ---------------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------------

def test_fenced_code_keeps_content_and_language() -> None:
    doc = parse("```python\nprint(1)\n\nprint(2)\n```\n")
    block = doc.root.children[0]
    assert isinstance(block, CodeBlock)
    assert block.language == "python"
    assert block.content == "print(1)\n\nprint(2)"


def test_fence_language_aliases_are_normalized() -> None:
    doc = parse("```{.rs}\nfn main() {}\n```\n\n~~~ language-golang extra\npackage main\n~~~\n")
    assert [b.language for b in doc.root.children] == ["rust", "go"]
    assert doc.root.children[1].info == "language-golang extra"


def test_normalize_language() -> None:
    assert normalize_language("Python3") == "python"
    assert normalize_language("c++") == "cpp"
    assert normalize_language("{.js}") == "javascript"
    assert normalize_language("mermaid") == "mermaid"
    assert normalize_language("  ") is None


def test_unclosed_fence_runs_to_end_of_document() -> None:
    doc = parse("```\na\n# not a heading\n")
    assert len(doc.root.children) == 1
    assert doc.root.children[0].content == "a\n# not a heading\n"


def test_shorter_closing_fence_does_not_close() -> None:
    doc = parse("````\n```\n````\nafter")
    block = doc.root.children[0]
    assert block.content == "```"
    assert isinstance(doc.root.children[1], Paragraph)


def test_indented_code_block() -> None:
    doc = parse("    code line\n\npara")
    assert isinstance(doc.root.children[0], CodeBlock)
    assert doc.root.children[0].content == "code line"
    assert doc.root.children[0].language is None


def test_display_math_block_spans_blank_lines() -> None:
    doc = parse("$$\na\n\nb\n$$\n\nafter")
    first = doc.root.children[0]
    assert isinstance(first, Paragraph)
    assert first.raw == "$$\na\n\nb\n$$"
    assert doc.root.children[1].raw == "after"


# ---------------------------------------------------------------------------
# Blockquotes and callouts
# ---------------------------------------------------------------------------

def test_warning_callout_with_lazy_body() -> None:
    doc = parse("> [!WARNING]\nBody")
    quote = doc.root.children[0]
    assert isinstance(quote, Blockquote)
    assert quote.callout == "Warning"
    assert quote.is_known_callout
    assert quote.children[0].raw == "Body"


def test_unknown_callout_kind_is_kept() -> None:
    doc = parse("> [!FOO]\nBody")
    quote = doc.root.children[0]
    assert quote.callout == "Foo"
    assert not quote.is_known_callout


def test_callout_title_and_plain_quote() -> None:
    doc = parse("> [!note] Heads up\n> text\n\n> just a quote")
    callout, plain = doc.root.children
    assert callout.callout == "Note"
    assert callout.callout_title == "Heads up"
    assert plain.callout is None
    assert plain.children[0].raw == "just a quote"


def test_nested_blockquote_depth_is_bounded() -> None:
    doc = parse("> " * 200 + "deep")
    depth = 0
    node = doc.root.children[0]
    while isinstance(node, Blockquote):
        depth += 1
        node = node.children[0]
    assert depth <= 33
    assert isinstance(node, Paragraph)


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------

def test_task_list_items() -> None:
    doc = parse("- [ ] todo\n- [x] done\n- plain")
    block = doc.root.children[0]
    assert isinstance(block, ListBlock)
    assert block.task
    assert [item.checked for item in block.children] == [False, True, None]
    assert block.children[0].children[0].raw == "todo"


def test_ordered_list_keeps_start_number() -> None:
    doc = parse("3. a\n4. b")
    block = doc.root.children[0]
    assert block.ordered
    assert block.start == 3
    assert len(block.children) == 2


def test_nested_list() -> None:
    doc = parse("- a\n  - b\n- c")
    outer = doc.root.children[0]
    assert len(outer.children) == 2
    first = outer.children[0]
    assert isinstance(first.children[0], Paragraph)
    assert isinstance(first.children[1], ListBlock)
    assert first.children[1].children[0].children[0].raw == "b"


def test_list_lazy_continuation() -> None:
    doc = parse("- first line\ncontinued")
    item = doc.root.children[0].children[0]
    assert item.children[0].raw == "first line\ncontinued"


# ---------------------------------------------------------------------------
# Footnotes and definition lists
# ---------------------------------------------------------------------------

def test_footnote_definitions_leave_normal_flow() -> None:
    doc = parse("Text[^1]\n\n[^1]: Note body\n    continued\n")
    assert len(doc.root.children) == 1
    definition = doc.footnotes["1"]
    assert definition.children[0].raw == "Note body\ncontinued"


def test_first_footnote_definition_wins() -> None:
    doc = parse("[^a]: one\n\n[^a]: two\n")
    assert doc.root.children == []
    assert doc.footnotes["a"].children[0].raw == "one"


def test_definition_list() -> None:
    doc = parse("Term\n: Definition one\n: Definition two\n\nOther\n: Def")
    block = doc.root.children[0]
    assert isinstance(block, DefinitionList)
    assert len(block.children) == 2
    first = block.children[0]
    assert first.term.raw == "Term"
    assert [d.raw for d in first.definitions] == ["Definition one", "Definition two"]
    assert block.children[1].term.raw == "Other"


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def test_table_with_alignment() -> None:
    doc = parse("| A | B |\n|:--|--:|\n| 1 | 2 |")
    table = doc.root.children[0]
    assert isinstance(table, Table)
    assert table.alignments == ["left", "right"]
    assert [c.raw for c in table.header.children] == ["A", "B"]
    assert [[c.raw for c in row.children] for row in table.body] == [["1", "2"]]


def test_table_escaped_pipe_stays_in_cell() -> None:
    doc = parse("| a \\| b | c |\n|---|---|")
    table = doc.root.children[0]
    assert [c.raw for c in table.header.children] == ["a \\| b", "c"]


def test_table_without_separator_is_paragraph() -> None:
    doc = parse("| a | b |\n| c | d |")
    assert [type(b) for b in doc.root.children] == [Paragraph]


def test_table_with_mismatched_separator_is_paragraph() -> None:
    doc = parse("| a | b |\n|---|\n")
    assert [type(b) for b in doc.root.children] == [Paragraph]


def test_single_cell_header_needs_piped_separator() -> None:
    heading = parse("a|\n---\n").root.children[0]
    assert isinstance(heading, Heading)
    assert (heading.level, heading.raw) == (2, "a|")

    table = parse("a|\n---|\n").root.children[0]
    assert isinstance(table, Table)
    assert [c.raw for c in table.header.children] == ["a"]


def test_mismatched_body_row_ends_table() -> None:
    doc = parse("| a | b |\n|---|---|\n| 1 | 2 |\n| 3 |\n")
    table, tail = doc.root.children
    assert isinstance(table, Table)
    assert len(table.body) == 1
    assert isinstance(tail, Paragraph)
    assert tail.raw == "| 3 |"


# ---------------------------------------------------------------------------
# Normalization, totality, determinism
# ---------------------------------------------------------------------------

def test_bytes_and_line_endings_are_normalized() -> None:
    doc = parse(b"# T\r\nline\rnext\x00")
    heading, para = doc.root.children
    assert heading.raw == "T"
    assert para.raw == "line\nnext�"


def test_invalid_utf8_is_replaced() -> None:
    assert normalize_text(b"\xff\xfeok") == "��ok"


def test_parser_is_total_on_random_input() -> None:
    rng = random.Random(1234)
    alphabet = list("#>-*_`~$[]()!|:^\\ \t\n1.xX=+{}<") + ["\r", "\x00"]
    for _ in range(300):
        size = rng.randint(0, 200)
        if rng.random() < 0.3:
            data: str | bytes = bytes(rng.randrange(256) for _ in range(size))
        else:
            data = "".join(rng.choice(alphabet) for _ in range(size))
        doc = parse(data)
        assert isinstance(doc.root, Root)


def test_pathological_list_nesting() -> None:
    doc = parse("- " * 500 + "x")
    assert isinstance(doc.root.children[0], ListBlock)


def test_parse_is_deterministic() -> None:
    text = "# A\n\n- [ ] t\n\n| a | b |\n|---|---|\n| 1 | 2 |\n\n> [!TIP]\n> x\n\n[^n]: note\n"
    assert parse(text) == parse(text)


def test_sibling_spans_do_not_overlap() -> None:
    text = "# A\n\npara\n\n```\ncode\n```\n\n- a\n- b\n\n> q\n\n| a |\n|---|\n| 1 |\n\nTerm\n: def\n"
    doc = parse(text)
    previous_end = 0
    for block in doc.root.children:
        assert doc.root.span.contains(block.span)
        assert block.span.start >= previous_end
        previous_end = block.span.end
