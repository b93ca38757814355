"""markview CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from markview.assembler import RenderTree, RenderTreeAssembler
from markview.config import Settings, load_settings
from markview.document import Document
from markview.external.cache import RenderCache
from markview.external.client import ExternalRendererClient
from markview.renderer.html_renderer import HTMLRenderer
from markview.repository import normalize_repo_url

logger = logging.getLogger(__name__)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", type=str, default=None, help="Override MARKVIEW_APP__LOG_LEVEL")
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """Render extended Markdown documents."""
    settings = load_settings()
    level = (log_level or settings.app.log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = settings


@main.command()
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), required=True, help="Output HTML path")
@click.option("--title", type=str, default=None, help="Override document title")
@click.option("--dark-mode", is_flag=True, help="Enable dark mode stylesheet")
@click.option("--no-math", is_flag=True, help="Leave math as source text")
@click.option("--no-diagrams", is_flag=True, help="Leave mermaid diagrams as code")
@click.option("--offline", is_flag=True, help="Do not contact rendering services")
@click.option("--wait", type=float, default=None, help="Seconds to wait for math and diagrams")
@click.option("--repo", type=str, default=None, help="Repository URL or git remote for #123 links")
@click.pass_obj
def render(
    settings: Settings,
    input_path: Path,
    output: Path,
    title: str | None,
    dark_mode: bool,
    no_math: bool,
    no_diagrams: bool,
    offline: bool,
    wait: float | None,
    repo: str | None,
) -> None:
    """Convert a Markdown file into a self-contained HTML file."""
    settings = _with_overrides(settings, no_math=no_math, no_diagrams=no_diagrams, repo=repo)
    tree = asyncio.run(
        _render_tree(
            input_path,
            settings,
            offline=offline,
            wait=settings.renderer.timeout if wait is None else wait,
        )
    )

    html = HTMLRenderer().render(tree, title_override=title, dark_mode=dark_mode)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(html, encoding="utf-8")

    click.echo(f"Rendered: {output}")


@main.command()
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def outline(settings: Settings, input_path: Path) -> None:
    """Print the heading outline with anchor ids."""
    tree = _load_offline(input_path, settings)
    for entry in tree.outline:
        click.echo(f"{'  ' * (entry.level - 1)}{entry.text}  #{entry.anchor}")


@main.command()
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("query", type=str)
@click.option("--case-sensitive", is_flag=True, help="Match case exactly")
@click.pass_obj
def find(settings: Settings, input_path: Path, query: str, case_sensitive: bool) -> None:
    """Search the rendered text of a document."""
    tree = _load_offline(input_path, settings)
    matches = tree.find(query, case_sensitive=case_sensitive)
    for match in matches:
        where = "/".join(str(idx) for idx in match.path)
        if match.footnote:
            where = f"^{match.footnote}:{where}"
        click.echo(f"{where}\t{match.preview}")
    click.echo(f"{len(matches)} match(es)", err=True)


def _with_overrides(settings: Settings, *, no_math: bool, no_diagrams: bool, repo: str | None) -> Settings:
    update: dict[str, object] = {}
    if no_math:
        update["render_math"] = False
    if no_diagrams:
        update["render_diagrams"] = False
    if repo:
        try:
            update["github_repo"] = normalize_repo_url(repo)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--repo") from exc
    if not update:
        return settings
    return settings.model_copy(update={"markdown": settings.markdown.model_copy(update=update)})


def _load_offline(input_path: Path, settings: Settings) -> RenderTree:
    document = Document(str(input_path), RenderTreeAssembler.from_settings(settings))
    return document.load(input_path.read_bytes())


async def _render_tree(input_path: Path, settings: Settings, *, offline: bool, wait: float) -> RenderTree:
    markdown = settings.markdown
    if offline or not (markdown.render_math or markdown.render_diagrams):
        return _load_offline(input_path, settings)

    with RenderCache.from_settings(settings.cache) as cache:
        async with ExternalRendererClient.from_settings(settings, cache) as client:
            document = Document(str(input_path), RenderTreeAssembler.from_settings(settings, client))
            tree = document.load(input_path.read_bytes())
            if not await document.wait_for_artifacts(wait):
                logger.warning("%d artifacts still pending after %.1fs", len(tree.pending_keys()), wait)
            document.close()
            return tree


if __name__ == "__main__":  # pragma: no cover
    main()
