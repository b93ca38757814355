"""Assemble parsed blocks, inline spans, highlighting and artifacts into a RenderTree."""

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from urllib.parse import unquote

from markview.config import Settings
from markview.external.artifact import Artifact, ArtifactKind, Fragment
from markview.external.client import CompletionChannel, ExternalRendererClient
from markview.highlighter import Highlighter
from markview.parser.block_parser import BlockParser
from markview.parser.inline_parser import InlineResolver
from markview.parser.nodes import (
    Block,
    Blockquote,
    CodeBlock,
    DefinitionList,
    Emphasis,
    FootnoteDefinition,
    FootnoteRef,
    Heading,
    Inline,
    LeafBlock,
    Link,
    ListBlock,
    MathSpan,
    Paragraph,
    Root,
    Span,
    Strikethrough,
    Strong,
    Table,
    Text,
    plain_text,
)

logger = logging.getLogger(__name__)

MATH_LANGUAGES = frozenset({"math", "latex", "tex"})
DIAGRAM_LANGUAGES = frozenset({"mermaid"})

MAX_FIND_MATCHES = 500
PREVIEW_LENGTH = 180

Path = tuple[int, ...]


# ---------------------------------------------------------------------------
# Anchors
# ---------------------------------------------------------------------------

def slugify(title: str) -> str:
    """Lowercase ``title`` and collapse every run of non-alphanumerics to one hyphen."""
    out: list[str] = []
    pending_dash = False
    for ch in title:
        if ch.isalnum():
            if pending_dash and out:
                out.append("-")
            pending_dash = False
            out.append(ch.lower())
        else:
            pending_dash = True
    return "".join(out)


def unique_slug(base: str, used: set[str]) -> str:
    base = base or "section"
    if base not in used:
        used.add(base)
        return base
    idx = 1
    while f"{base}-{idx}" in used:
        idx += 1
    candidate = f"{base}-{idx}"
    used.add(candidate)
    return candidate


# ---------------------------------------------------------------------------
# Indices
# ---------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class OutlineEntry:
    anchor: str
    level: int
    text: str


@dataclass(slots=True, frozen=True)
class FindEntry:
    offset: int
    path: Path
    footnote: str | None = None


@dataclass(slots=True, frozen=True)
class FindMatch:
    offset: int
    length: int
    path: Path
    preview: str
    footnote: str | None = None


@dataclass(slots=True)
class FindIndex:
    """Flattened visible text of a tree; each entry owns the text up to the next one."""

    text: str = ""
    entries: list[FindEntry] = field(default_factory=list)

    def locate(self, offset: int) -> FindEntry | None:
        return self._locate([entry.offset for entry in self.entries], offset)

    def _locate(self, offsets: list[int], offset: int) -> FindEntry | None:
        pos = bisect_right(offsets, offset) - 1
        return self.entries[pos] if pos >= 0 else None

    def search(self, query: str, case_sensitive: bool = False, limit: int = MAX_FIND_MATCHES) -> list[FindMatch]:
        if not query:
            return []
        haystack = self.text if case_sensitive else _fold(self.text)
        needle = query if case_sensitive else _fold(query)
        offsets = [entry.offset for entry in self.entries]

        matches: list[FindMatch] = []
        start = 0
        while len(matches) < limit:
            pos = haystack.find(needle, start)
            if pos == -1:
                break
            entry = self._locate(offsets, pos)
            matches.append(
                FindMatch(
                    offset=pos,
                    length=len(needle),
                    path=entry.path if entry else (),
                    preview=self._preview(pos),
                    footnote=entry.footnote if entry else None,
                )
            )
            start = pos + max(len(needle), 1)
        return matches

    def _preview(self, offset: int) -> str:
        line_start = self.text.rfind("\n", 0, offset) + 1
        line_end = self.text.find("\n", offset)
        line = self.text[line_start : line_end if line_end != -1 else len(self.text)].strip()
        if len(line) > PREVIEW_LENGTH:
            line = line[:PREVIEW_LENGTH] + "…"
        return line


def _fold(text: str) -> str:
    # Lowercase without changing the string's length so offsets stay valid.
    return "".join(lower if len(lower := ch.lower()) == 1 else ch for ch in text)


class _FindBuilder:
    def __init__(self) -> None:
        self.parts: list[str] = []
        self.entries: list[FindEntry] = []
        self.offset = 0

    def add(self, text: str, path: Path, footnote: str | None = None) -> None:
        if self.parts:
            self.parts.append("\n")
            self.offset += 1
        self.entries.append(FindEntry(self.offset, path, footnote))
        self.parts.append(text)
        self.offset += len(text)

    def build(self) -> FindIndex:
        return FindIndex(text="".join(self.parts), entries=self.entries)


# ---------------------------------------------------------------------------
# Render tree
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class RenderTree:
    """Assembled output for one document generation.

    The block tree and indices are fixed once assembled; only the artifact
    table changes, and only through the owning document.
    """

    generation: int
    source_id: str
    root: Root
    footnotes: list[FootnoteDefinition] = field(default_factory=list)
    outline: list[OutlineEntry] = field(default_factory=list)
    find_index: FindIndex = field(default_factory=FindIndex)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    fragments: dict[str, Fragment] = field(default_factory=dict)

    def find(self, query: str, case_sensitive: bool = False, limit: int = MAX_FIND_MATCHES) -> list[FindMatch]:
        return self.find_index.search(query, case_sensitive=case_sensitive, limit=limit)

    def heading_for_fragment(self, fragment: str) -> OutlineEntry | None:
        """Resolve a URL fragment such as ``#user-content-my%20heading`` to a heading."""
        target = unquote(fragment.strip().lstrip("#")).strip()
        target = target.removeprefix("user-content-").strip()
        if not target:
            return None
        lowered = target.lower()
        for entry in self.outline:
            if entry.anchor == lowered:
                return entry
        slug = slugify(target)
        return next((entry for entry in self.outline if entry.anchor == slug), None)

    def pending_keys(self) -> list[str]:
        return [key for key, artifact in self.artifacts.items() if artifact.is_pending]


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class RenderTreeAssembler:
    def __init__(
        self,
        parser: BlockParser | None = None,
        resolver: InlineResolver | None = None,
        highlighter: Highlighter | None = None,
        client: ExternalRendererClient | None = None,
        *,
        render_math: bool = True,
        render_diagrams: bool = True,
    ) -> None:
        self.parser = parser or BlockParser()
        self.resolver = resolver or InlineResolver()
        self.highlighter = highlighter or Highlighter()
        self.client = client
        self.render_math = render_math
        self.render_diagrams = render_diagrams

    @classmethod
    def from_settings(cls, settings: Settings, client: ExternalRendererClient | None = None) -> RenderTreeAssembler:
        markdown = settings.markdown
        return cls(
            resolver=InlineResolver(
                github_repo=markdown.github_repo,
                autolink_urls=markdown.autolink_urls,
                github_links=markdown.github_links,
                replace_emoji=markdown.replace_emoji,
                smart_typography=markdown.smart_typography,
            ),
            highlighter=Highlighter(
                min_confidence=settings.highlight.min_confidence,
                auto_detect=markdown.auto_detect_code_lang,
            ),
            client=client,
            render_math=markdown.render_math,
            render_diagrams=markdown.render_diagrams,
        )

    def assemble(
        self,
        text: str | bytes,
        *,
        source_id: str = "",
        generation: int = 0,
        channel: CompletionChannel | None = None,
        force: bool = False,
    ) -> RenderTree:
        parsed = self.parser.parse(text)
        run = _Assembly(self, parsed.footnotes, generation, channel, force)

        for idx, block in enumerate(parsed.root.children):
            run.block(block, (idx,))
        footnotes = run.footnote_section()

        tree = RenderTree(
            generation=generation,
            source_id=source_id,
            root=parsed.root,
            footnotes=footnotes,
            outline=run.outline,
            find_index=run.find.build(),
            artifacts=run.artifacts,
            fragments=run.fragments,
        )
        logger.debug(
            "Assembled %s generation %d: %d headings, %d artifacts (%d pending)",
            source_id or "<text>",
            generation,
            len(tree.outline),
            len(tree.artifacts),
            len(tree.pending_keys()),
        )
        return tree


class _Assembly:
    """State for assembling one generation."""

    def __init__(
        self,
        assembler: RenderTreeAssembler,
        definitions: dict[str, FootnoteDefinition],
        generation: int,
        channel: CompletionChannel | None,
        force: bool,
    ) -> None:
        self.assembler = assembler
        self.definitions = definitions
        self.generation = generation
        self.channel = channel
        self.force = force

        self.used_anchors: set[str] = set()
        self.outline: list[OutlineEntry] = []
        self.find = _FindBuilder()
        self.footnote_order: list[str] = []
        self.artifacts: dict[str, Artifact] = {}
        self.fragments: dict[str, Fragment] = {}
        self._footnote: str | None = None

    # -----------------------------------------------------------------------
    # Blocks
    # -----------------------------------------------------------------------

    def block(self, block: Block, path: Path) -> None:
        if isinstance(block, Heading):
            self.leaf(block, path)
            text = plain_text(block.children, footnotes=False).strip()
            block.anchor = unique_slug(slugify(text), self.used_anchors)
            self.outline.append(OutlineEntry(block.anchor, block.level, text))
        elif isinstance(block, Paragraph):
            self.leaf(block, path)
        elif isinstance(block, CodeBlock):
            self.code_block(block, path)
        elif isinstance(block, (Blockquote, FootnoteDefinition)):
            self.blocks(block.children, path)
        elif isinstance(block, ListBlock):
            for idx, item in enumerate(block.children):
                self.blocks(item.children, path + (idx,))
        elif isinstance(block, Table):
            for r, row in enumerate(block.children):
                for c, cell in enumerate(row.children):
                    self.leaf(cell, path + (r, c))
        elif isinstance(block, DefinitionList):
            for i, item in enumerate(block.children):
                for j, part in enumerate(item.children):
                    self.leaf(part, path + (i, j))

    def blocks(self, children: list[Block], path: Path) -> None:
        for idx, child in enumerate(children):
            self.block(child, path + (idx,))

    def leaf(self, block: LeafBlock, path: Path) -> None:
        children = self.assembler.resolver.resolve(block.raw, block.source_map)
        block.children = self.inlines(children)
        self.find.add(plain_text(block.children), path, self._footnote)

    def code_block(self, block: CodeBlock, path: Path) -> None:
        assembler = self.assembler
        language = block.language
        if language in MATH_LANGUAGES and assembler.render_math:
            block.artifact_key = self.request(Fragment(ArtifactKind.MATH, block.content.strip()))
        elif language in DIAGRAM_LANGUAGES and assembler.render_diagrams:
            block.artifact_key = self.request(Fragment(ArtifactKind.DIAGRAM, block.content))

        result = assembler.highlighter.highlight(block.content, language)
        block.highlighted = result.spans
        if result.detected:
            block.detected_language = result.language
        self.find.add(block.content, path, self._footnote)

    # -----------------------------------------------------------------------
    # Inlines
    # -----------------------------------------------------------------------

    def inlines(self, nodes: list[Inline]) -> list[Inline]:
        out: list[Inline] = []
        for node in nodes:
            if isinstance(node, FootnoteRef):
                if node.label not in self.definitions:
                    node = Text(f"[^{node.label}]", span=node.span)
                else:
                    node.number = self.footnote_number(node.label)
            elif isinstance(node, MathSpan):
                if self.assembler.render_math:
                    node.artifact_key = self.request(Fragment(ArtifactKind.MATH, node.source))
            elif isinstance(node, (Emphasis, Strong, Strikethrough, Link)):
                node.children = self.inlines(node.children)

            if isinstance(node, Text) and out and isinstance(out[-1], Text):
                previous = out[-1]
                out[-1] = Text(previous.text + node.text, span=Span(previous.span.start, node.span.end))
            else:
                out.append(node)
        return out

    def footnote_number(self, label: str) -> int:
        if label not in self.footnote_order:
            self.footnote_order.append(label)
            self.definitions[label].number = len(self.footnote_order)
        return self.footnote_order.index(label) + 1

    def footnote_section(self) -> list[FootnoteDefinition]:
        section: list[FootnoteDefinition] = []
        idx = 0
        # Definitions may reference further footnotes, which extends the order.
        while idx < len(self.footnote_order):
            label = self.footnote_order[idx]
            definition = self.definitions[label]
            self._footnote = label
            self.blocks(definition.children, (idx,))
            section.append(definition)
            idx += 1
        self._footnote = None
        return section

    # -----------------------------------------------------------------------
    # Artifacts
    # -----------------------------------------------------------------------

    def request(self, fragment: Fragment) -> str:
        key = fragment.key
        if key in self.fragments:
            return key
        self.fragments[key] = fragment
        client = self.assembler.client
        if client is not None and self.channel is not None:
            self.artifacts[key] = client.resolve(
                fragment,
                channel=self.channel,
                generation=self.generation,
                force=self.force,
            )
        return key
