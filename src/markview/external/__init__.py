"""External math and diagram rendering."""

from .artifact import Artifact, ArtifactKind, ArtifactState, Fragment, content_hash
from .cache import RenderCache
from .client import ArtifactUpdate, CompletionChannel, ExternalRendererClient

__all__ = [
    "Artifact",
    "ArtifactKind",
    "ArtifactState",
    "ArtifactUpdate",
    "CompletionChannel",
    "ExternalRendererClient",
    "Fragment",
    "RenderCache",
    "content_hash",
]
