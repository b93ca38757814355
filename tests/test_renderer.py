from __future__ import annotations

import base64

from markview.assembler import RenderTreeAssembler
from markview.external.artifact import Artifact, ArtifactKind, content_hash
from markview.renderer.html_renderer import HTMLRenderer

SVG = b'<svg xmlns="http://www.w3.org/2000/svg"><text>ok</text></svg>'

DOC = """# Renderer Test

Hello[^1] with `code` and [bad](javascript:alert(1)) <script>.

> [!WARNING]
> Careful

> [!FOO]
> Custom

- [x] done
- [ ] todo

| A | B |
|:-:|--:|
| 1 | 2 |

```python
def f():
    pass
```

Math $E=mc^2$ :smile:

[^1]: Footnote body
"""


def render(text: str, source_id: str = "doc.md", **kwargs) -> str:
    tree = RenderTreeAssembler().assemble(text, source_id=source_id, generation=1)
    return HTMLRenderer().render(tree, **kwargs)


def test_renderer_generates_page() -> None:
    html = render(DOC)

    assert "<title>Renderer Test</title>" in html
    assert 'id="renderer-test"' in html
    assert 'href="#renderer-test"' in html
    assert 'class="mv-callout mv-callout-warning" data-kind="Warning"' in html
    assert 'class="mv-callout" data-kind="Foo"' in html
    assert 'type="checkbox" disabled checked' in html
    assert 'style="text-align: center"' in html
    assert '<span class="k">def</span>' in html
    assert 'href="#fn-1"' in html
    assert 'id="fn-1"' in html
    assert 'id="fnref-1"' in html
    assert "Footnote body" in html
    assert "mv-math-source" in html
    assert "E=mc^2" in html
    assert "<code>code</code>" in html
    assert 'href="#"' in html
    assert "javascript:" not in html
    assert "&lt;script&gt;" in html
    assert ".highlight" in html


def test_repeated_footnote_refs_get_distinct_ids() -> None:
    html = render("a[^1] b[^1]\n\n[^1]: note\n")
    assert 'id="fnref-1"' in html
    assert 'id="fnref-1-2"' in html
    assert 'href="#fnref-1-2"' in html


def test_artifact_states() -> None:
    assembler = RenderTreeAssembler()
    key = content_hash("x", ArtifactKind.MATH)
    renderer = HTMLRenderer()

    tree = assembler.assemble("$x$", generation=1)
    tree.artifacts[key] = Artifact.ready(key, SVG)
    html = renderer.render(tree)
    assert "data:image/svg+xml;base64," + base64.b64encode(SVG).decode("ascii") in html

    tree.artifacts[key] = Artifact.pending(key)
    html = renderer.render(tree)
    assert "mv-artifact-pending" in html
    assert "data-pending-artifacts" in html

    tree.artifacts[key] = Artifact.failed(key, "Math service returned 500: boom", expires_at=1.0)
    html = renderer.render(tree)
    assert "mv-artifact-failed" in html
    assert "Math service returned 500: boom" in html


def test_titles_and_dark_mode() -> None:
    assert "<title>notes</title>" in render("no heading", source_id="docs/notes.md")
    assert "<title>Untitled</title>" in render("no heading", source_id="")
    assert "<title>Custom</title>" in render(DOC, title_override="Custom")
    assert '<html lang="en" class="dark">' in render(DOC, dark_mode=True)
