"""Core intermediate representation (IR) for parsed documents."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field


@dataclass(slots=True, frozen=True)
class Span:
    """Half-open character range into the normalized document text."""

    start: int
    end: int

    def contains(self, other: Span) -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(slots=True, frozen=True)
class SourceMap:
    """Maps offsets in a leaf's inline text back to document offsets.

    Each segment is ``(text_offset, source_offset)`` for the start of one
    source line; offsets inside a line advance one-to-one.
    """

    segments: tuple[tuple[int, int], ...] = ((0, 0),)

    def to_source(self, index: int) -> int:
        pos = bisect_right(self.segments, (index, float("inf"))) - 1
        text_start, source_start = self.segments[max(pos, 0)]
        return source_start + (index - text_start)

    def span(self, start: int, end: int) -> Span:
        if end <= start:
            point = self.to_source(start)
            return Span(point, point)
        return Span(self.to_source(start), self.to_source(end - 1) + 1)


# ---------------------------------------------------------------------------
# Inline nodes
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class Text:
    text: str
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Emphasis:
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Strong:
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Strikethrough:
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class CodeSpan:
    code: str
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Link:
    url: str
    children: list[Inline] = field(default_factory=list)
    title: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Image:
    url: str
    alt: str = ""
    title: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Autolink:
    url: str
    text: str
    span: Span = Span(0, 0)


@dataclass(slots=True)
class IssueRef:
    number: int
    text: str
    pull_request: bool = False
    repo: str | None = None
    url: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class EmojiShortcode:
    name: str
    glyph: str
    span: Span = Span(0, 0)


@dataclass(slots=True)
class MathSpan:
    source: str
    display: bool = False
    artifact_key: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class FootnoteRef:
    label: str
    number: int | None = None
    span: Span = Span(0, 0)


Inline = (
    Text
    | Emphasis
    | Strong
    | Strikethrough
    | CodeSpan
    | Link
    | Image
    | Autolink
    | IssueRef
    | EmojiShortcode
    | MathSpan
    | FootnoteRef
)


# ---------------------------------------------------------------------------
# Block nodes
# ---------------------------------------------------------------------------

KNOWN_CALLOUTS = ("Note", "Tip", "Important", "Warning", "Caution")


@dataclass(slots=True)
class Heading:
    level: int
    raw: str = ""
    source_map: SourceMap = SourceMap()
    children: list[Inline] = field(default_factory=list)
    anchor: str = ""
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Paragraph:
    raw: str = ""
    source_map: SourceMap = SourceMap()
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class CodeBlock:
    language: str | None
    content: str
    info: str = ""
    detected_language: str | None = None
    highlighted: list[tuple[str, str]] = field(default_factory=list)
    artifact_key: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class ListItem:
    children: list[Block] = field(default_factory=list)
    checked: bool | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class ListBlock:
    ordered: bool = False
    task: bool = False
    start: int = 1
    children: list[ListItem] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Blockquote:
    children: list[Block] = field(default_factory=list)
    callout: str | None = None
    callout_title: str | None = None
    span: Span = Span(0, 0)

    @property
    def is_known_callout(self) -> bool:
        return self.callout in KNOWN_CALLOUTS


@dataclass(slots=True)
class TableCell:
    raw: str = ""
    source_map: SourceMap = SourceMap()
    children: list[Inline] = field(default_factory=list)
    align: str | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class TableRow:
    children: list[TableCell] = field(default_factory=list)
    header: bool = False
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Table:
    children: list[TableRow] = field(default_factory=list)
    alignments: list[str | None] = field(default_factory=list)
    span: Span = Span(0, 0)

    @property
    def header(self) -> TableRow | None:
        if self.children and self.children[0].header:
            return self.children[0]
        return None

    @property
    def body(self) -> list[TableRow]:
        return [row for row in self.children if not row.header]


@dataclass(slots=True)
class ThematicBreak:
    span: Span = Span(0, 0)


@dataclass(slots=True)
class DefinitionTerm:
    raw: str = ""
    source_map: SourceMap = SourceMap()
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class DefinitionDetails:
    raw: str = ""
    source_map: SourceMap = SourceMap()
    children: list[Inline] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class DefinitionItem:
    children: list[DefinitionTerm | DefinitionDetails] = field(default_factory=list)
    span: Span = Span(0, 0)

    @property
    def term(self) -> DefinitionTerm | None:
        return next((c for c in self.children if isinstance(c, DefinitionTerm)), None)

    @property
    def definitions(self) -> list[DefinitionDetails]:
        return [c for c in self.children if isinstance(c, DefinitionDetails)]


@dataclass(slots=True)
class DefinitionList:
    children: list[DefinitionItem] = field(default_factory=list)
    span: Span = Span(0, 0)


@dataclass(slots=True)
class FootnoteDefinition:
    label: str
    children: list[Block] = field(default_factory=list)
    number: int | None = None
    span: Span = Span(0, 0)


@dataclass(slots=True)
class Root:
    children: list[Block] = field(default_factory=list)
    span: Span = Span(0, 0)


Block = (
    Heading
    | Paragraph
    | ListBlock
    | CodeBlock
    | Blockquote
    | Table
    | ThematicBreak
    | DefinitionList
    | FootnoteDefinition
)

# Nodes whose inline children come from resolving ``raw``.
LeafBlock = Heading | Paragraph | TableCell | DefinitionTerm | DefinitionDetails


@dataclass(slots=True)
class ParsedDocument:
    root: Root
    footnotes: dict[str, FootnoteDefinition] = field(default_factory=dict)


def plain_text(nodes: list[Inline], *, footnotes: bool = True) -> str:
    """Flatten inline nodes into their visible text.

    With ``footnotes=False`` footnote references are left out, as heading
    anchors and outline entries need.
    """
    parts: list[str] = []
    for node in nodes:
        if isinstance(node, Text):
            parts.append(node.text)
        elif isinstance(node, CodeSpan):
            parts.append(node.code)
        elif isinstance(node, (Emphasis, Strong, Strikethrough, Link)):
            parts.append(plain_text(node.children, footnotes=footnotes))
        elif isinstance(node, Image):
            parts.append(node.alt)
        elif isinstance(node, (Autolink, IssueRef)):
            parts.append(node.text)
        elif isinstance(node, EmojiShortcode):
            parts.append(node.glyph)
        elif isinstance(node, MathSpan):
            parts.append(node.source)
        elif isinstance(node, FootnoteRef) and footnotes:
            parts.append(f"[{node.number}]" if node.number is not None else f"[^{node.label}]")
    return "".join(parts)
