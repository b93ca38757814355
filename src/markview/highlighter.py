"""Code block highlighting with pygments and signature-based language detection."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from pygments.lexer import Lexer
from pygments.lexers import get_lexer_by_name
from pygments.token import STANDARD_TYPES
from pygments.util import ClassNotFound

from markview.parser.block_parser import normalize_language

logger = logging.getLogger(__name__)

Span = tuple[str, str]


@dataclass(slots=True)
class HighlightResult:
    language: str | None
    spans: list[Span] = field(default_factory=list)
    detected: bool = False


@dataclass(slots=True, frozen=True)
class LanguageSignature:
    """Evidence for one language: keywords score 1 each, patterns score their weight."""

    name: str
    keywords: frozenset[str] = frozenset()
    patterns: tuple[tuple[re.Pattern[str], int], ...] = ()
    first_line: tuple[re.Pattern[str], ...] = ()

    def score(self, code: str, words: set[str], first: str) -> int:
        total = len(self.keywords & words)
        for pattern, weight in self.patterns:
            if pattern.search(code):
                total += weight
        if any(rule.match(first) for rule in self.first_line):
            total += FIRST_LINE_WEIGHT
        return total


FIRST_LINE_WEIGHT = 10


def _sig(name: str, keywords: str = "", patterns: tuple = (), first_line: tuple = ()) -> LanguageSignature:
    return LanguageSignature(
        name=name,
        keywords=frozenset(keywords.split()),
        patterns=tuple((re.compile(p, re.MULTILINE), w) for p, w in patterns),
        first_line=tuple(re.compile(p) for p in first_line),
    )


# Registration order breaks ties.
SIGNATURES: tuple[LanguageSignature, ...] = (
    _sig(
        "bash",
        first_line=(r"#!.*\b(?:ba|z|k|da)?sh\b",),
        patterns=((r"^\s*(?:export|echo|sudo|apt-get|cd)\s", 2), (r"\$\{?\w+\}?", 1), (r"\bfi\b|\bdone\b|\besac\b", 2)),
    ),
    _sig(
        "xml",
        first_line=(r"<\?xml\b",),
    ),
    _sig(
        "html",
        first_line=(r"(?i)<!DOCTYPE\s+html|<html\b",),
        patterns=((r"</(?:div|span|body|head|p|a)>", 3),),
    ),
    _sig(
        "json",
        first_line=(r"[{\[]\s*(?:\"|\{|\[|$|\d|true|false|null)",),
        patterns=((r"^\s*\"[^\"]+\"\s*:", 2),),
    ),
    _sig(
        "sql",
        first_line=(r"(?i)(?:SELECT|INSERT|UPDATE|DELETE|CREATE|WITH)\b",),
        keywords="SELECT FROM WHERE JOIN INSERT INTO VALUES UPDATE GROUP ORDER BY",
    ),
    _sig(
        "rust",
        keywords="fn let mut impl pub struct enum match use mod crate trait",
        patterns=((r"\bfn\s+main\s*\(", 3), (r"\w+!\(", 2), (r"->\s*[A-Z&]", 1), (r"::", 1)),
    ),
    _sig(
        "python",
        first_line=(r"#!.*\bpython",),
        keywords="def import from class return elif None True False self lambda yield",
        patterns=((r"^\s*def\s+\w+\(.*\)\s*(?:->.*)?:\s*$", 3), (r"^\s*(?:from\s+\S+\s+)?import\s+\w", 2)),
    ),
    _sig(
        "javascript",
        first_line=(r"#!.*\bnode\b",),
        keywords="function const let var return async await require export",
        patterns=((r"console\.log\(", 3), (r"=>", 2), (r"\bfunction\s+\w*\s*\(", 2)),
    ),
    _sig(
        "csharp",
        keywords="using namespace class public private static void var",
        patterns=((r"^\s*using\s+System", 4), (r"\bnamespace\s+\w", 2), (r"Console\.Write", 3)),
    ),
    _sig(
        "cpp",
        keywords="std cout cin template namespace class public",
        patterns=((r"#include\s*<iostream>", 5), (r"\bstd::", 3)),
    ),
    _sig(
        "c",
        keywords="int char void return struct sizeof",
        patterns=((r"^\s*#include\s*[<\"]", 3), (r"\bprintf\s*\(", 2)),
    ),
    _sig(
        "go",
        keywords="func package import defer go chan",
        patterns=((r"^package\s+\w+", 3), (r"\bfunc\s+\w+\(", 2), (r":=", 1)),
    ),
    _sig(
        "yaml",
        patterns=((r"^[\w-]+:\s*(?:\S.*)?$", 1), (r"^\s*-\s+\w+:", 2), (r"^---\s*$", 2)),
    ),
)

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class Highlighter:
    def __init__(
        self,
        min_confidence: int = 3,
        auto_detect: bool = True,
        signatures: tuple[LanguageSignature, ...] = SIGNATURES,
    ) -> None:
        self.min_confidence = min_confidence
        self.auto_detect = auto_detect
        self.signatures = signatures

    def highlight(self, code: str, language: str | None = None) -> HighlightResult:
        """Tokenize ``code`` into ``(text, css_class)`` spans.

        Unknown languages and lexer failures yield one unstyled span.
        """
        detected = False
        if language:
            language = normalize_language(language)
        elif self.auto_detect:
            language = self.detect(code)
            detected = language is not None

        result = HighlightResult(language=language, spans=[(code, "")] if code else [], detected=detected)
        if not language or not code:
            return result

        lexer = _lexer_for(language)
        if lexer is None:
            return result

        try:
            spans = _merge((_css_class(ttype), value) for ttype, value in lexer.get_tokens(code))
        except Exception:
            logger.debug("Lexer %s failed, leaving block unstyled", language, exc_info=True)
            return result

        result.spans = spans
        return result

    def detect(self, code: str) -> str | None:
        """Best-scoring language name, or None below ``min_confidence``."""
        first = next((line.strip() for line in code.splitlines() if line.strip()), "")
        if not first:
            return None
        words = set(_WORD_RE.findall(code))

        best: str | None = None
        best_score = self.min_confidence - 1
        for signature in self.signatures:
            score = signature.score(code, words, first)
            if score > best_score:
                best, best_score = signature.name, score
        return best


@lru_cache(maxsize=128)
def _lexer_for(language: str) -> Lexer | None:
    try:
        return get_lexer_by_name(language, stripnl=False, ensurenl=False)
    except ClassNotFound:
        logger.debug("No lexer for %r", language)
        return None


def _css_class(ttype) -> str:
    while ttype not in STANDARD_TYPES:
        ttype = ttype.parent
    css = STANDARD_TYPES[ttype]
    return "" if css == "w" else css


def _merge(tokens) -> list[Span]:
    spans: list[Span] = []
    for css, value in tokens:
        if not value:
            continue
        if spans and spans[-1][1] == css:
            spans[-1] = (spans[-1][0] + value, css)
        else:
            spans.append((value, css))
    return spans
