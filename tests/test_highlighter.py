"""Tests for code highlighting and language detection.

Covers:
- Declared languages and aliases
- Unknown languages degrade to one unstyled span
- Signature-based detection, thresholds and tie-breaking
"""

from __future__ import annotations

from markview.highlighter import Highlighter, LanguageSignature

PYTHON = "def f(x):\n    return x\n"


def test_declared_language_is_tokenized() -> None:
    result = Highlighter().highlight(PYTHON, "python")
    assert result.language == "python"
    assert not result.detected
    assert "".join(text for text, _ in result.spans) == PYTHON
    assert ("def", "k") in result.spans


def test_adjacent_spans_with_same_class_are_merged() -> None:
    result = Highlighter().highlight(PYTHON, "python")
    classes = [css for _, css in result.spans]
    assert all(a != b for a, b in zip(classes, classes[1:]))


def test_language_alias_is_normalized() -> None:
    assert Highlighter().highlight(PYTHON, "py").language == "python"


def test_unknown_language_is_unstyled() -> None:
    result = Highlighter().highlight("foo bar", "nonexistentlang")
    assert result.language == "nonexistentlang"
    assert result.spans == [("foo bar", "")]


def test_empty_code() -> None:
    result = Highlighter().highlight("", "python")
    assert result.spans == []


def test_detects_common_languages() -> None:
    detect = Highlighter().detect
    assert detect("#!/usr/bin/env python\nprint('hi')") == "python"
    assert detect('fn main() {\n    println!("hi");\n}') == "rust"
    assert detect("<?xml version='1.0'?><a/>") == "xml"
    assert detect("SELECT * FROM t WHERE x = 1") == "sql"
    assert detect('{"a": 1}') == "json"
    assert detect("#include <iostream>\nint main() { std::cout << 1; }") == "cpp"
    assert detect('#include <stdio.h>\nint main(void) { printf("x"); return 0; }') == "c"


def test_undetectable_code_is_unstyled() -> None:
    result = Highlighter().highlight("hello there friend")
    assert result.language is None
    assert not result.detected
    assert result.spans == [("hello there friend", "")]


def test_detected_language_is_flagged() -> None:
    result = Highlighter().highlight(PYTHON)
    assert result.language == "python"
    assert result.detected


def test_auto_detect_can_be_disabled() -> None:
    assert Highlighter(auto_detect=False).highlight(PYTHON).language is None


def test_confidence_threshold() -> None:
    rust = 'fn main() {\n    println!("hi");\n}'
    assert Highlighter(min_confidence=20).detect(rust) is None


def test_ties_go_to_first_signature() -> None:
    signatures = (
        LanguageSignature("aaa", keywords=frozenset({"x", "y", "z"})),
        LanguageSignature("bbb", keywords=frozenset({"x", "y", "z"})),
    )
    assert Highlighter(signatures=signatures).detect("x y z") == "aaa"
