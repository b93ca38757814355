from __future__ import annotations

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from markview.repository import normalize_repo_url


class AppConfig(BaseModel):
    """Application-wide values."""

    log_level: str = "INFO"


class MarkdownConfig(BaseModel):
    """Which extensions the parser and inline resolver apply."""

    render_math: bool = True
    render_diagrams: bool = True
    auto_detect_code_lang: bool = True
    autolink_urls: bool = True
    github_links: bool = True
    replace_emoji: bool = True
    smart_typography: bool = False
    # Repository web URL or git remote used to link #123 / PR#123 references
    github_repo: str | None = None

    @field_validator("github_repo")
    @classmethod
    def _normalize_repo(cls, value: str | None) -> str | None:
        if not value:
            return None
        return normalize_repo_url(value)


class RendererConfig(BaseModel):
    """External math and diagram rendering services."""

    max_in_flight: int = 4
    timeout: float = 10.0
    failure_ttl: float = 30.0
    math_url: str = "https://latex.codecogs.com/svg.latex?{expression}"
    diagram_url: str = "https://kroki.io/mermaid/svg"
    user_agent: str = "markview"


class CacheConfig(BaseModel):
    """Render cache tiers."""

    max_entries: int = 256
    directory: str | None = None  # persistent tier, disabled when unset


class HighlightConfig(BaseModel):
    min_confidence: int = 3


class Settings(BaseSettings):
    """Top-level settings loaded from environment variables and .env only."""

    model_config = SettingsConfigDict(
        env_prefix="MARKVIEW_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app: AppConfig = AppConfig()
    markdown: MarkdownConfig = MarkdownConfig()
    renderer: RendererConfig = RendererConfig()
    cache: CacheConfig = CacheConfig()
    highlight: HighlightConfig = HighlightConfig()


def load_settings() -> Settings:
    """Load settings from environment variables and .env only."""
    return Settings()  # type: ignore[call-arg]
