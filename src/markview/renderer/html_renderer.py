"""Render a RenderTree snapshot into a self-contained HTML page."""

from __future__ import annotations

import base64
import html
from pathlib import Path

from jinja2 import Environment, FileSystemLoader
from pygments.formatters import HtmlFormatter

from markview.assembler import RenderTree
from markview.external.artifact import Artifact
from markview.parser.nodes import (
    Autolink,
    Block,
    Blockquote,
    CodeBlock,
    CodeSpan,
    DefinitionList,
    DefinitionTerm,
    EmojiShortcode,
    Emphasis,
    FootnoteRef,
    Heading,
    Image,
    Inline,
    IssueRef,
    Link,
    ListBlock,
    ListItem,
    MathSpan,
    Paragraph,
    Strikethrough,
    Strong,
    Table,
    TableRow,
    Text,
    ThematicBreak,
)

_UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:text/html")


class HTMLRenderer:
    """Render assembled trees into the page template."""

    def __init__(
        self,
        template_path: Path | None = None,
        *,
        code_style: str = "default",
        dark_code_style: str = "monokai",
    ) -> None:
        if template_path is None:
            template_path = Path(__file__).resolve().parent.parent / "template" / "page.html"

        loader = FileSystemLoader(str(template_path.parent))
        self._env = Environment(loader=loader, autoescape=True, trim_blocks=True, lstrip_blocks=True)
        self._template_name = template_path.name
        self.code_style = code_style
        self.dark_code_style = dark_code_style

    def render(self, tree: RenderTree, *, title_override: str | None = None, dark_mode: bool = False) -> str:
        page = _Page(tree)
        body = "\n".join(page.block(block) for block in tree.root.children)

        footnotes = [
            {
                "number": definition.number,
                "label": definition.label,
                "html": "\n".join(page.block(block) for block in definition.children),
                "backrefs": page.footnote_backrefs.get(definition.label, []),
            }
            for definition in tree.footnotes
        ]

        toc_items = [{"level": entry.level, "title": entry.text, "anchor": entry.anchor} for entry in tree.outline]

        style = self.dark_code_style if dark_mode else self.code_style
        template = self._env.get_template(self._template_name)
        return template.render(
            page_title=title_override or _page_title(tree),
            body=body,
            toc_items=toc_items,
            footnotes=footnotes,
            dark_mode=dark_mode,
            highlight_css=HtmlFormatter(style=style).get_style_defs(".highlight"),
            pending=len(tree.pending_keys()),
        )


def _page_title(tree: RenderTree) -> str:
    for entry in tree.outline:
        if entry.level == 1 and entry.text:
            return entry.text
    if tree.source_id:
        return Path(tree.source_id).stem
    return "Untitled"


class _Page:
    """HTML fragments for one render; tracks footnote back-reference ids."""

    def __init__(self, tree: RenderTree) -> None:
        self.tree = tree
        self.used_ids: set[str] = set()
        self.footnote_backrefs: dict[str, list[str]] = {}

    # -----------------------------------------------------------------------
    # Blocks
    # -----------------------------------------------------------------------

    def block(self, block: Block) -> str:
        if isinstance(block, Heading):
            anchor = html.escape(block.anchor)
            return (
                f'<h{block.level} id="{anchor}" class="mv-heading">'
                f'<a class="mv-anchor" href="#{anchor}" aria-hidden="true">#</a>'
                f"{self.inlines(block.children)}</h{block.level}>"
            )

        if isinstance(block, Paragraph):
            return f"<p>{self.inlines(block.children)}</p>"

        if isinstance(block, CodeBlock):
            return self.code_block(block)

        if isinstance(block, ListBlock):
            return self.list_block(block)

        if isinstance(block, Blockquote):
            return self.blockquote(block)

        if isinstance(block, Table):
            return self.table(block)

        if isinstance(block, ThematicBreak):
            return "<hr />"

        if isinstance(block, DefinitionList):
            parts = ["<dl>"]
            for item in block.children:
                for part in item.children:
                    tag = "dt" if isinstance(part, DefinitionTerm) else "dd"
                    parts.append(f"<{tag}>{self.inlines(part.children)}</{tag}>")
            parts.append("</dl>")
            return "".join(parts)

        return ""

    def code_block(self, block: CodeBlock) -> str:
        fallback = self.highlighted(block)
        if block.artifact_key:
            return f'<div class="mv-figure">{self.artifact(block.artifact_key, fallback, display=True)}</div>'
        return fallback

    def highlighted(self, block: CodeBlock) -> str:
        language = block.language or block.detected_language
        spans = block.highlighted or [(block.content, "")]
        code = "".join(
            f'<span class="{css}">{html.escape(text)}</span>' if css else html.escape(text) for text, css in spans
        )
        lang_attr = f' data-lang="{html.escape(language)}"' if language else ""
        return f'<div class="highlight"{lang_attr}><pre><code>{code}</code></pre></div>'

    def list_block(self, block: ListBlock) -> str:
        if block.ordered:
            start = f' start="{block.start}"' if block.start != 1 else ""
            open_tag, close_tag = f"<ol{start}>", "</ol>"
        else:
            open_tag, close_tag = "<ul>", "</ul>"
        if block.task:
            open_tag = open_tag[:-1] + ' class="mv-task-list">'
        items = "".join(self.list_item(item) for item in block.children)
        return f"{open_tag}{items}{close_tag}"

    def list_item(self, item: ListItem) -> str:
        checkbox = ""
        if item.checked is not None:
            checked = " checked" if item.checked else ""
            checkbox = f'<input type="checkbox" disabled{checked} /> '
        if len(item.children) == 1 and isinstance(item.children[0], Paragraph):
            content = self.inlines(item.children[0].children)
        else:
            content = "\n".join(self.block(child) for child in item.children)
        css = ' class="mv-task"' if item.checked is not None else ""
        return f"<li{css}>{checkbox}{content}</li>"

    def blockquote(self, block: Blockquote) -> str:
        content = "\n".join(self.block(child) for child in block.children)
        if block.callout is None:
            return f"<blockquote>{content}</blockquote>"
        kind = html.escape(block.callout)
        css = f"mv-callout mv-callout-{kind.lower()}" if block.is_known_callout else "mv-callout"
        title = html.escape(block.callout_title or block.callout)
        return (
            f'<div class="{css}" data-kind="{kind}">'
            f'<p class="mv-callout-title">{title}</p>{content}</div>'
        )

    def table(self, block: Table) -> str:
        head = ""
        if block.header is not None:
            head = f"<thead>{self.table_row(block.header, 'th')}</thead>"
        body = ""
        if block.body:
            body = "<tbody>" + "".join(self.table_row(row, "td") for row in block.body) + "</tbody>"
        return f'<div class="mv-table-wrap"><table>{head}{body}</table></div>'

    def table_row(self, row: TableRow, tag: str) -> str:
        cells = []
        for cell in row.children:
            style = f' style="text-align: {cell.align}"' if cell.align else ""
            cells.append(f"<{tag}{style}>{self.inlines(cell.children)}</{tag}>")
        return "<tr>" + "".join(cells) + "</tr>"

    # -----------------------------------------------------------------------
    # Inlines
    # -----------------------------------------------------------------------

    def inlines(self, nodes: list[Inline]) -> str:
        return "".join(self.inline(node) for node in nodes)

    def inline(self, node: Inline) -> str:
        if isinstance(node, Text):
            return html.escape(node.text)
        if isinstance(node, Emphasis):
            return f"<em>{self.inlines(node.children)}</em>"
        if isinstance(node, Strong):
            return f"<strong>{self.inlines(node.children)}</strong>"
        if isinstance(node, Strikethrough):
            return f"<del>{self.inlines(node.children)}</del>"
        if isinstance(node, CodeSpan):
            return f"<code>{html.escape(node.code)}</code>"
        if isinstance(node, Link):
            title = f' title="{html.escape(node.title)}"' if node.title else ""
            return f'<a href="{_safe_url(node.url)}"{title}>{self.inlines(node.children)}</a>'
        if isinstance(node, Image):
            title = f' title="{html.escape(node.title)}"' if node.title else ""
            return f'<img src="{_safe_url(node.url)}" alt="{html.escape(node.alt)}"{title} loading="lazy" />'
        if isinstance(node, Autolink):
            return f'<a href="{_safe_url(node.url)}">{html.escape(node.text)}</a>'
        if isinstance(node, IssueRef):
            if node.url:
                return f'<a class="mv-issue" href="{_safe_url(node.url)}">{html.escape(node.text)}</a>'
            return f'<span class="mv-issue">{html.escape(node.text)}</span>'
        if isinstance(node, EmojiShortcode):
            return f'<span class="mv-emoji" title=":{html.escape(node.name)}:">{node.glyph}</span>'
        if isinstance(node, MathSpan):
            tag = "div" if node.display else "span"
            fallback = f'<code class="mv-math-source">{html.escape(node.source)}</code>'
            if node.artifact_key is None:
                return f'<{tag} class="mv-math">{fallback}</{tag}>'
            return f'<{tag} class="mv-math">{self.artifact(node.artifact_key, fallback, display=node.display)}</{tag}>'
        if isinstance(node, FootnoteRef):
            return self.footnote_ref(node)
        return ""

    def footnote_ref(self, node: FootnoteRef) -> str:
        ref_id = _dedupe_anchor(f"fnref-{node.number}", self.used_ids)
        self.footnote_backrefs.setdefault(node.label, []).append(ref_id)
        return (
            f'<sup class="mv-fn-ref" id="{ref_id}">'
            f'<a href="#fn-{node.number}" data-footnote="{html.escape(node.label)}">[{node.number}]</a></sup>'
        )

    def artifact(self, key: str, fallback: str, *, display: bool) -> str:
        artifact: Artifact | None = self.tree.artifacts.get(key)
        if artifact is None:
            return fallback
        fragment = self.tree.fragments.get(key)
        alt = html.escape(fragment.text if fragment else "")
        if artifact.is_ready and artifact.data:
            data = base64.b64encode(artifact.data).decode("ascii")
            css = "mv-artifact mv-display" if display else "mv-artifact"
            return f'<img class="{css}" src="data:image/svg+xml;base64,{data}" alt="{alt}" />'
        if artifact.is_failed:
            error = html.escape(artifact.error or "render failed")
            return f'<span class="mv-artifact-failed" data-artifact="{key}" title="{error}">{fallback}</span>'
        return f'<span class="mv-artifact-pending" data-artifact="{key}">{fallback}</span>'


def _safe_url(url: str) -> str:
    if url.strip().lower().startswith(_UNSAFE_SCHEMES):
        return "#"
    return html.escape(url, quote=True)


def _dedupe_anchor(anchor: str, used: set[str]) -> str:
    if anchor not in used:
        used.add(anchor)
        return anchor

    idx = 2
    while True:
        candidate = f"{anchor}-{idx}"
        if candidate not in used:
            used.add(candidate)
            return candidate
        idx += 1
