"""Externally rendered artifacts and their content-addressed keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum


class ArtifactKind(str, Enum):
    MATH = "math"
    DIAGRAM = "diagram"


class ArtifactState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


def content_hash(text: str, kind: ArtifactKind) -> str:
    """SHA-256 over the renderer kind and the fragment text."""
    digest = hashlib.sha256()
    digest.update(ArtifactKind(kind).value.encode("ascii"))
    digest.update(b"\x00")
    digest.update(text.encode("utf-8", "surrogatepass"))
    return digest.hexdigest()


@dataclass(slots=True, frozen=True)
class Fragment:
    """A math expression or diagram source awaiting an external render."""

    kind: ArtifactKind
    text: str
    key: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", content_hash(self.text, self.kind))


@dataclass(slots=True, frozen=True)
class Artifact:
    key: str
    state: ArtifactState
    data: bytes | None = None
    error: str | None = None
    expires_at: float | None = None

    @classmethod
    def pending(cls, key: str) -> Artifact:
        return cls(key=key, state=ArtifactState.PENDING)

    @classmethod
    def ready(cls, key: str, data: bytes) -> Artifact:
        return cls(key=key, state=ArtifactState.READY, data=data)

    @classmethod
    def failed(cls, key: str, error: str, expires_at: float) -> Artifact:
        return cls(key=key, state=ArtifactState.FAILED, error=error, expires_at=expires_at)

    @property
    def is_ready(self) -> bool:
        return self.state is ArtifactState.READY

    @property
    def is_pending(self) -> bool:
        return self.state is ArtifactState.PENDING

    @property
    def is_failed(self) -> bool:
        return self.state is ArtifactState.FAILED

    def is_expired(self, now: float) -> bool:
        return self.is_failed and self.expires_at is not None and self.expires_at <= now


def looks_like_svg(data: bytes) -> bool:
    head = data[:4096].lstrip(b"\xef\xbb\xbf \t\r\n")
    return head.startswith((b"<svg", b"<?xml", b"<!--", b"<!DOCTYPE svg")) and b"<svg" in data[:8192]
