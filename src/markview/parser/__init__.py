"""Parser package."""

from .block_parser import BlockParser, normalize_language, normalize_text
from .inline_parser import InlineKind, InlineResolver
from .nodes import Block, Inline, ParsedDocument, Root, SourceMap, Span, plain_text

__all__ = [
    "Block",
    "BlockParser",
    "Inline",
    "InlineKind",
    "InlineResolver",
    "ParsedDocument",
    "Root",
    "SourceMap",
    "Span",
    "normalize_language",
    "normalize_text",
    "plain_text",
]
