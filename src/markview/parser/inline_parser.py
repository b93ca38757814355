"""Inline span resolution for leaf blocks.

Categories run in a fixed order and each one claims text for itself. Once a
character is claimed, later categories never look at it again, so markup
inside a code span or math span always stays literal.
"""

from __future__ import annotations

import re
import string
import unicodedata
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Callable

import emoji

from .nodes import (
    Autolink,
    CodeSpan,
    EmojiShortcode,
    Emphasis,
    FootnoteRef,
    Image,
    Inline,
    IssueRef,
    Link,
    MathSpan,
    SourceMap,
    Span,
    Strikethrough,
    Strong,
    Text,
    plain_text,
)

# Container nodes nested deeper than this are kept as literal text.
MAX_INLINE_DEPTH = 48


class InlineKind(str, Enum):
    CODE = "code"
    ESCAPE = "escape"
    MATH = "math"
    LINK = "link"
    AUTOLINK = "autolink"
    ISSUE = "issue"
    EMOJI = "emoji"
    EMPHASIS = "emphasis"
    FOOTNOTE = "footnote"


@dataclass(slots=True)
class _Claim:
    start: int
    end: int
    node: Inline
    # Range whose content becomes the node's children (links, emphasis).
    inner: tuple[int, int] | None = None


class _Scan:
    """Per-call resolution state: the text, what is claimed, and by whom."""

    def __init__(self, text: str, source_map: SourceMap) -> None:
        self.text = text
        self.source_map = source_map
        self.claimed = bytearray(len(text))
        self.claims: list[_Claim] = []
        self.labels: list[tuple[int, int]] = []
        self._outer: list[tuple[int, int]] = []
        self._outer_starts: list[int] = []
        self._outer_count = 0

    def is_free(self, start: int, end: int) -> bool:
        return not any(self.claimed[start:end])

    def claim(self, start: int, end: int, node: Inline) -> None:
        self.claims.append(_Claim(start, end, node))
        self.claimed[start:end] = b"\x01" * (end - start)

    def claim_container(self, start: int, end: int, node: Inline, inner: tuple[int, int]) -> None:
        self.claims.append(_Claim(start, end, node, inner))
        self.claimed[start : inner[0]] = b"\x01" * (inner[0] - start)
        self.claimed[inner[1] : end] = b"\x01" * (end - inner[1])

    def free_segments(self) -> list[tuple[int, int]]:
        segments: list[tuple[int, int]] = []
        start = None
        for idx, flag in enumerate(self.claimed):
            if flag and start is not None:
                segments.append((start, idx))
                start = None
            elif not flag and start is None:
                start = idx
        if start is not None:
            segments.append((start, len(self.claimed)))
        return segments

    def in_label(self, start: int, end: int) -> bool:
        # Labels nest or are disjoint, so only the outermost ones need checking.
        if self._outer_count != len(self.labels):
            self._outer = []
            for lo, hi in sorted(self.labels, key=lambda label: (label[0], -label[1])):
                if not self._outer or lo >= self._outer[-1][1]:
                    self._outer.append((lo, hi))
            self._outer_starts = [lo for lo, _ in self._outer]
            self._outer_count = len(self.labels)
        idx = bisect_right(self._outer_starts, start) - 1
        return idx >= 0 and end <= self._outer[idx][1]


class InlineResolver:
    """Resolve a leaf block's text into an ordered list of inline nodes."""

    def __init__(
        self,
        *,
        github_repo: str | None = None,
        autolink_urls: bool = True,
        github_links: bool = True,
        replace_emoji: bool = True,
        smart_typography: bool = False,
    ) -> None:
        self.github_repo = github_repo.rstrip("/") if github_repo else None
        self.smart_typography = smart_typography
        disabled = set()
        if not autolink_urls:
            disabled.add(InlineKind.AUTOLINK)
        if not github_links:
            disabled.add(InlineKind.ISSUE)
        if not replace_emoji:
            disabled.add(InlineKind.EMOJI)
        self._matchers = [(kind, matcher) for kind, matcher in _MATCHERS if kind not in disabled]

    def resolve(self, text: str, source_map: SourceMap | None = None) -> list[Inline]:
        scan = _Scan(text, source_map or SourceMap())
        for _kind, matcher in self._matchers:
            matcher(self, scan)
        claims = sorted(scan.claims, key=lambda c: (c.start, -c.end))
        return self._build(scan, 0, len(text), claims, depth=0)

    # -----------------------------------------------------------------------
    # Tree building
    # -----------------------------------------------------------------------

    def _build(self, scan: _Scan, lo: int, hi: int, claims: list[_Claim], depth: int) -> list[Inline]:
        nodes: list[Inline] = []
        pos = lo
        idx = 0
        while idx < len(claims):
            claim = claims[idx]
            j = idx + 1
            while j < len(claims) and claims[j].start < claim.end:
                j += 1
            nested = claims[idx + 1 : j]

            if claim.start > pos:
                nodes.append(self._text(scan, pos, claim.start))

            node = claim.node
            if claim.inner is not None and depth >= MAX_INLINE_DEPTH:
                node = Text(scan.text[claim.start : claim.end])
            elif claim.inner is not None:
                inner_lo, inner_hi = claim.inner
                children = self._build(scan, inner_lo, inner_hi, nested, depth + 1)
                if isinstance(node, Image):
                    node.alt = plain_text(children)
                else:
                    node.children = children
            node.span = scan.source_map.span(claim.start, claim.end)
            nodes.append(node)
            pos = claim.end
            idx = j

        if pos < hi:
            nodes.append(self._text(scan, pos, hi))
        return self._merge_text(nodes)

    def _text(self, scan: _Scan, start: int, end: int) -> Text:
        value = scan.text[start:end]
        if self.smart_typography:
            value = smart_typography(value)
        return Text(value, span=scan.source_map.span(start, end))

    @staticmethod
    def _merge_text(nodes: list[Inline]) -> list[Inline]:
        merged: list[Inline] = []
        for node in nodes:
            if isinstance(node, Text) and merged and isinstance(merged[-1], Text):
                previous = merged[-1]
                merged[-1] = Text(previous.text + node.text, span=Span(previous.span.start, node.span.end))
            elif isinstance(node, Text) and not node.text:
                continue
            else:
                merged.append(node)
        return merged

    # -----------------------------------------------------------------------
    # Code spans
    # -----------------------------------------------------------------------

    def _match_code_spans(self, scan: _Scan) -> None:
        text = scan.text
        runs: list[tuple[int, int]] = []
        idx = 0
        while idx < len(text):
            if text[idx] != "`":
                idx += 1
                continue
            end = idx
            while end < len(text) and text[end] == "`":
                end += 1
            runs.append((idx, end - idx))
            idx = end

        by_length: dict[int, list[int]] = {}
        for pos, length in runs:
            by_length.setdefault(length, []).append(pos)

        cursor = 0
        for pos, length in runs:
            if pos < cursor:
                continue
            if _escaped(text, pos):
                # A backslash-escaped backtick is literal; the rest of the run may still open.
                pos += 1
                length -= 1
                if length == 0:
                    continue
            candidates = by_length.get(length, [])
            k = bisect_right(candidates, pos)
            if k >= len(candidates):
                continue
            close = candidates[k]
            code = text[pos + length : close].replace("\n", " ")
            if len(code) > 2 and code[0] == " " and code[-1] == " " and code.strip():
                code = code[1:-1]
            scan.claim(pos, close + length, CodeSpan(code))
            cursor = close + length

    # -----------------------------------------------------------------------
    # Backslash escapes
    # -----------------------------------------------------------------------

    def _match_escapes(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            for match in _ESCAPE_RE.finditer(scan.text, lo, hi):
                scan.claim(match.start(), match.end(), Text(match.group(1)))

    # -----------------------------------------------------------------------
    # Math spans
    # -----------------------------------------------------------------------

    def _match_math(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            for match in _DISPLAY_MATH_RE.finditer(scan.text, lo, hi):
                source = match.group(1).strip()
                if source:
                    scan.claim(match.start(), match.end(), MathSpan(source, display=True))
        for lo, hi in scan.free_segments():
            for match in _INLINE_MATH_RE.finditer(scan.text, lo, hi):
                scan.claim(match.start(), match.end(), MathSpan(match.group(1), display=False))

    # -----------------------------------------------------------------------
    # Links and images
    # -----------------------------------------------------------------------

    def _match_links(self, scan: _Scan) -> None:
        text = scan.text
        pairs = _bracket_pairs(text, scan.claimed)
        label_end = -1
        pos = 0
        while True:
            open_at = text.find("[", pos)
            if open_at == -1:
                break
            pos = open_at + 1
            close = pairs.get(open_at)
            if close is None or scan.claimed[open_at]:
                continue
            if close + 1 >= len(text) or text[close + 1] != "(" or scan.claimed[close + 1]:
                continue
            image = open_at > 0 and text[open_at - 1] == "!" and not scan.claimed[open_at - 1]
            if open_at < label_end and not image:
                # Links do not nest; only images may sit inside a link label.
                continue
            destination = _parse_destination(text, close + 2)
            if destination is None or not scan.is_free(close, destination[2]):
                continue

            url, title, end = destination
            if image:
                node: Inline = Image(url=url, title=title)
                start = open_at - 1
            else:
                node = Link(url=url, title=title)
                start = open_at
                label_end = close
            scan.claim_container(start, end, node, (open_at + 1, close))
            scan.labels.append((open_at + 1, close))
            if image:
                pos = end

    # -----------------------------------------------------------------------
    # Autolinks
    # -----------------------------------------------------------------------

    def _match_autolinks(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            for match in _AUTOLINK_RE.finditer(scan.text, lo, hi):
                if scan.in_label(match.start(), match.end()):
                    continue
                if match.group("angle"):
                    target = match.group("angle")
                    scan.claim(match.start(), match.end(), Autolink(url=_normalize_autolink(target), text=target))
                    continue
                raw = match.group("bare") or match.group("email")
                trimmed = _trim_autolink(raw) if match.group("bare") else raw
                if not trimmed or (match.group("bare") and "." not in trimmed.split("//", 1)[-1]):
                    continue
                end = match.start() + len(trimmed)
                scan.claim(match.start(), end, Autolink(url=_normalize_autolink(trimmed), text=trimmed))

    # -----------------------------------------------------------------------
    # Issue and pull-request references
    # -----------------------------------------------------------------------

    def _match_issue_refs(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            for match in _ISSUE_RE.finditer(scan.text, lo, hi):
                if scan.in_label(match.start(), match.end()):
                    continue
                if match.group("repo"):
                    repo = match.group("repo")
                    number = int(match.group("cross"))
                    node = IssueRef(
                        number=number,
                        text=match.group(0),
                        repo=repo,
                        url=f"https://github.com/{repo}/issues/{number}",
                    )
                elif match.group("pr"):
                    number = int(match.group("pr"))
                    url = f"{self.github_repo}/pull/{number}" if self.github_repo else None
                    node = IssueRef(number=number, text=match.group(0), pull_request=True, url=url)
                else:
                    number = int(match.group("issue"))
                    url = f"{self.github_repo}/issues/{number}" if self.github_repo else None
                    node = IssueRef(number=number, text=match.group(0), url=url)
                scan.claim(match.start(), match.end(), node)

    # -----------------------------------------------------------------------
    # Emoji shortcodes
    # -----------------------------------------------------------------------

    def _match_emoji(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            pos = lo
            while pos < hi:
                match = _EMOJI_RE.search(scan.text, pos, hi)
                if not match:
                    break
                glyph = lookup_emoji(match.group(1))
                if glyph is None:
                    # Unknown name: the closing colon may open the next shortcode.
                    pos = match.end() - 1
                    continue
                scan.claim(match.start(), match.end(), EmojiShortcode(name=match.group(1), glyph=glyph))
                pos = match.end()

    # -----------------------------------------------------------------------
    # Emphasis, strong and strikethrough
    # -----------------------------------------------------------------------

    def _match_emphasis(self, scan: _Scan) -> None:
        delims = _delimiter_runs(scan)
        bottoms: dict[tuple[str, int, bool, int], int] = {}

        for ci, closer in enumerate(delims):
            if not closer.can_close:
                continue
            while closer.count > 0:
                bottom_key = (closer.char, closer.length % 3, closer.can_open, closer.scope)
                bottom = bottoms.get(bottom_key, -1)
                oi = ci - 1
                opener = None
                while oi > bottom:
                    candidate = delims[oi]
                    if (
                        candidate.char == closer.char
                        and candidate.can_open
                        and candidate.count > 0
                        and candidate.scope == closer.scope
                        and _delims_compatible(candidate, closer)
                    ):
                        opener = candidate
                        break
                    oi -= 1
                if opener is None:
                    bottoms[bottom_key] = ci - 1
                    break

                if closer.char == "~":
                    use = closer.count
                    node: Inline = Strikethrough()
                else:
                    use = 2 if opener.count >= 2 and closer.count >= 2 else 1
                    node = Strong() if use == 2 else Emphasis()

                opener.count -= use
                open_lo = opener.pos + opener.count
                close_lo = closer.pos + closer.used
                closer.used += use
                closer.count -= use
                for between in delims[oi + 1 : ci]:
                    between.count = 0

                scan.claim_container(open_lo, close_lo + use, node, (open_lo + use, close_lo))

    # -----------------------------------------------------------------------
    # Footnote references
    # -----------------------------------------------------------------------

    def _match_footnote_refs(self, scan: _Scan) -> None:
        for lo, hi in scan.free_segments():
            for match in _FOOTNOTE_REF_RE.finditer(scan.text, lo, hi):
                scan.claim(match.start(), match.end(), FootnoteRef(label=match.group(1)))


_MATCHERS: tuple[tuple[InlineKind, Callable[[InlineResolver, _Scan], None]], ...] = (
    (InlineKind.CODE, InlineResolver._match_code_spans),
    (InlineKind.ESCAPE, InlineResolver._match_escapes),
    (InlineKind.MATH, InlineResolver._match_math),
    (InlineKind.LINK, InlineResolver._match_links),
    (InlineKind.AUTOLINK, InlineResolver._match_autolinks),
    (InlineKind.ISSUE, InlineResolver._match_issue_refs),
    (InlineKind.EMOJI, InlineResolver._match_emoji),
    (InlineKind.EMPHASIS, InlineResolver._match_emphasis),
    (InlineKind.FOOTNOTE, InlineResolver._match_footnote_refs),
)


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_ESCAPE_RE = re.compile(r"\\([!-/:-@\[-`{-~])")
_DISPLAY_MATH_RE = re.compile(r"\$\$(.+?)\$\$", re.DOTALL)
_INLINE_MATH_RE = re.compile(r"(?<!\$)\$(?=[^\s$])([^$\n]*?[^\s$])\$(?![\d$])")
_AUTOLINK_RE = re.compile(
    r"<(?P<angle>(?:https?|ftp|mailto):[^\s<>]+|[\w.+-]+@[\w-]+(?:\.[\w-]+)+)>"
    r"|(?<![\w/@.])(?P<bare>(?:https?://|www\.)[^\s<]+)"
    r"|(?<![\w.+-])(?P<email>[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,})(?![\w@-])"
)
_ISSUE_RE = re.compile(
    r"(?<![\w./-])(?P<repo>[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+)#(?P<cross>\d+)\b"
    r"|(?<![A-Za-z0-9_])(?i:PR)\s?#(?P<pr>\d+)\b"
    r"|(?<![\w&#])#(?P<issue>\d+)\b"
)
_EMOJI_RE = re.compile(r":([A-Za-z0-9_+\-]{1,64}):")
_FOOTNOTE_REF_RE = re.compile(r"\[\^([^\]\s]+)\]")

_AUTOLINK_TRAILING = "?!.,:*_~'\";"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _escaped(text: str, pos: int) -> bool:
    backslashes = 0
    while pos - backslashes - 1 >= 0 and text[pos - backslashes - 1] == "\\":
        backslashes += 1
    return backslashes % 2 == 1


def _bracket_pairs(text: str, claimed: bytearray) -> dict[int, int]:
    stack: list[int] = []
    pairs: dict[int, int] = {}
    for idx, ch in enumerate(text):
        if claimed[idx]:
            continue
        if ch == "[":
            stack.append(idx)
        elif ch == "]" and stack:
            pairs[stack.pop()] = idx
    return pairs


def _parse_destination(text: str, pos: int) -> tuple[str, str | None, int] | None:
    """Parse ``url "title")`` starting after the opening parenthesis."""
    n = len(text)
    while pos < n and text[pos] in " \t\n":
        pos += 1

    if pos < n and text[pos] == "<":
        close = text.find(">", pos + 1)
        if close == -1 or "\n" in text[pos + 1 : close]:
            return None
        url = text[pos + 1 : close]
        pos = close + 1
    else:
        start = pos
        depth = 0
        while pos < n:
            ch = text[pos]
            if ch.isspace():
                break
            if ch == "\\" and pos + 1 < n:
                pos += 2
                continue
            if ch == "(":
                depth += 1
                if depth > 32:
                    return None
            elif ch == ")":
                if depth == 0:
                    break
                depth -= 1
            pos += 1
        url = text[start:pos]

    title = None
    while pos < n and text[pos] in " \t\n":
        pos += 1
    if pos < n and text[pos] in "\"'(":
        closing = ")" if text[pos] == "(" else text[pos]
        end = text.find(closing, pos + 1)
        if end == -1:
            return None
        title = text[pos + 1 : end]
        pos = end + 1
        while pos < n and text[pos] in " \t\n":
            pos += 1

    if pos >= n or text[pos] != ")":
        return None
    return url, title, pos + 1


def _trim_autolink(url: str) -> str:
    while url:
        last = url[-1]
        if last in _AUTOLINK_TRAILING:
            url = url[:-1]
        elif last == ")" and url.count(")") > url.count("("):
            url = url[:-1]
        else:
            break
    return url


def _normalize_autolink(url: str) -> str:
    if "://" in url or url.startswith("mailto:"):
        return url
    if url.startswith("www."):
        return f"https://{url}"
    if "@" in url:
        return f"mailto:{url}"
    return f"https://{url}"


@lru_cache(maxsize=2048)
def lookup_emoji(name: str) -> str | None:
    """Return the glyph for a shortcode name, or None when it is not a known alias."""
    code = f":{name}:"
    glyph = emoji.emojize(code, language="alias")
    return None if glyph == code else glyph


# ---------------------------------------------------------------------------
# Emphasis delimiter runs
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _Delim:
    char: str
    pos: int
    length: int
    count: int
    can_open: bool
    can_close: bool
    scope: int
    used: int = 0


def _is_punctuation(ch: str) -> bool:
    return ch in string.punctuation or unicodedata.category(ch)[0] in "PS"


def _delimiter_runs(scan: _Scan) -> list[_Delim]:
    text = scan.text
    delims: list[_Delim] = []
    scopes = _LabelScopes(scan.labels)
    idx = 0
    n = len(text)
    while idx < n:
        ch = text[idx]
        if ch not in "*_~" or scan.claimed[idx]:
            idx += 1
            continue
        end = idx
        while end < n and text[end] == ch and not scan.claimed[end]:
            end += 1
        length = end - idx
        if ch == "~" and length > 2:
            idx = end
            continue

        before = text[idx - 1] if idx > 0 else " "
        after = text[end] if end < n else " "
        left = not after.isspace() and (
            not _is_punctuation(after) or before.isspace() or _is_punctuation(before)
        )
        right = not before.isspace() and (
            not _is_punctuation(before) or after.isspace() or _is_punctuation(after)
        )
        if ch == "_":
            can_open = left and (not right or _is_punctuation(before))
            can_close = right and (not left or _is_punctuation(after))
        else:
            can_open, can_close = left, right

        delims.append(_Delim(ch, idx, length, length, can_open, can_close, scopes.at(idx)))
        idx = end
    return delims


class _LabelScopes:
    """Innermost link label around each position, for positions given in increasing order."""

    def __init__(self, labels: list[tuple[int, int]]) -> None:
        self._labels = labels
        self._order = sorted(range(len(labels)), key=lambda idx: (labels[idx][0], -labels[idx][1]))
        self._next = 0
        self._open: list[int] = []

    def at(self, pos: int) -> int:
        """Index of the innermost label containing ``pos`` (-1 for none)."""
        labels = self._labels
        while self._next < len(self._order) and labels[self._order[self._next]][0] <= pos:
            self._open.append(self._order[self._next])
            self._next += 1
        while self._open and labels[self._open[-1]][1] <= pos:
            self._open.pop()
        return self._open[-1] if self._open else -1


def _delims_compatible(opener: _Delim, closer: _Delim) -> bool:
    if closer.char == "~":
        return opener.count == closer.count
    if (opener.can_close or closer.can_open) and (opener.length + closer.length) % 3 == 0:
        return opener.length % 3 == 0 and closer.length % 3 == 0
    return True


# ---------------------------------------------------------------------------
# Typography
# ---------------------------------------------------------------------------

def smart_typography(text: str) -> str:
    """Curl quotes and replace ``--`` / ``...`` with typographic dashes and ellipses."""
    out: list[str] = []
    prev = ""
    double_open = True
    single_open = True
    idx = 0
    n = len(text)
    while idx < n:
        ch = text[idx]
        if text.startswith("...", idx):
            out.append("…")
            prev = "…"
            idx += 3
            continue
        if text.startswith("--", idx):
            out.append("—")
            prev = "—"
            idx += 2
            continue
        if ch == '"':
            out.append("“" if double_open else "”")
            double_open = not double_open
        elif ch == "'":
            nxt = text[idx + 1] if idx + 1 < n else ""
            if prev.isalnum() and nxt.isalnum():
                out.append("’")
            else:
                out.append("‘" if single_open else "’")
                single_open = not single_open
        else:
            out.append(ch)
        prev = ch
        idx += 1
    return "".join(out)
