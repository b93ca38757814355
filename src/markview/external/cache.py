"""Content-addressed render cache: an LRU memory tier over an optional directory."""

from __future__ import annotations

import logging
import os
import tempfile
from collections import OrderedDict
from pathlib import Path

from markview.config import CacheConfig
from markview.external.artifact import Artifact, looks_like_svg

logger = logging.getLogger(__name__)


class RenderCache:
    """Maps artifact keys to artifacts.

    Ready and Failed artifacts live in the memory tier, which evicts the least
    recently used entry beyond ``max_entries``. Ready artifacts are also written
    to ``directory`` when one is configured; files there are only replaced,
    never evicted, and an unreadable file is treated as a miss.
    """

    def __init__(self, max_entries: int = 256, directory: str | Path | None = None) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.directory = Path(directory).expanduser() if directory else None
        self._memory: OrderedDict[str, Artifact] = OrderedDict()
        self._persisted: set[str] = set()
        self._open = False

    @classmethod
    def from_settings(cls, config: CacheConfig) -> RenderCache:
        return cls(max_entries=config.max_entries, directory=config.directory)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> RenderCache:
        if self._open:
            return self
        if self.directory is not None:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                self._persisted = {path.stem for path in self.directory.glob("*.svg")}
            except OSError as exc:
                logger.warning("Persistent render cache at %s unavailable: %s", self.directory, exc)
                self.directory = None
            else:
                logger.debug("Render cache %s holds %d entries", self.directory, len(self._persisted))
        self._open = True
        return self

    def close(self) -> None:
        self._memory.clear()
        self._persisted.clear()
        self._open = False

    def __enter__(self) -> RenderCache:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # Lookup and storage
    # -----------------------------------------------------------------------

    def get(self, key: str) -> Artifact | None:
        self._require_open()
        artifact = self._memory.get(key)
        if artifact is not None:
            self._memory.move_to_end(key)
            logger.debug("Cache hit %s (%s)", key[:12], artifact.state.value)
            return artifact

        artifact = self._read_persisted(key)
        if artifact is None:
            logger.debug("Cache miss %s", key[:12])
            return None
        self._remember(artifact)
        return artifact

    def put(self, artifact: Artifact) -> None:
        self._require_open()
        if artifact.is_pending:
            raise ValueError("pending artifacts are not cached")
        self._remember(artifact)
        if artifact.is_ready and self.directory is not None:
            self._write_persisted(artifact)

    def discard(self, key: str) -> None:
        """Forget the memory-tier entry for ``key``; persisted files stay."""
        self._memory.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._memory or key in self._persisted

    def __len__(self) -> int:
        return len(self._memory)

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("render cache is not open")

    def _remember(self, artifact: Artifact) -> None:
        self._memory[artifact.key] = artifact
        self._memory.move_to_end(artifact.key)
        while len(self._memory) > self.max_entries:
            evicted, _ = self._memory.popitem(last=False)
            logger.debug("Evicted %s from memory tier", evicted[:12])

    def _path(self, key: str) -> Path:
        assert self.directory is not None
        return self.directory / f"{key}.svg"

    def _read_persisted(self, key: str) -> Artifact | None:
        if self.directory is None or key not in self._persisted:
            return None
        path = self._path(key)
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Unreadable cache entry %s: %s", path, exc)
            self._persisted.discard(key)
            return None
        if not looks_like_svg(data):
            logger.warning("Ignoring corrupt cache entry %s", path)
            self._persisted.discard(key)
            return None
        return Artifact.ready(key, data)

    def _write_persisted(self, artifact: Artifact) -> None:
        path = self._path(artifact.key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".svg")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(artifact.data or b"")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.warning("Could not persist %s: %s", path, exc)
            return
        self._persisted.add(artifact.key)
