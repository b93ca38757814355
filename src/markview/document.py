"""An open document: its text, generation counter and latest RenderTree."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from markview.assembler import RenderTree, RenderTreeAssembler
from markview.exceptions import DocumentClosedError
from markview.external.artifact import Artifact
from markview.external.client import ArtifactUpdate, CompletionChannel, ExternalRendererClient
from markview.parser.block_parser import normalize_text

logger = logging.getLogger(__name__)

Listener = Callable[[RenderTree, Artifact], None]


class Document:
    """Owns one document's render state.

    Every load, reload or edit publishes a new generation and supersedes the
    requests of the previous one. Artifact completions arrive through the
    document's completion channel and are applied here only, by
    ``apply_pending`` or ``run``.
    """

    def __init__(self, source_id: str, assembler: RenderTreeAssembler) -> None:
        self.source_id = source_id
        self.assembler = assembler
        self.channel = CompletionChannel()
        self.text = ""
        self.tree: RenderTree | None = None
        self._listeners: list[Listener] = []
        self._closed = False

    @property
    def client(self) -> ExternalRendererClient | None:
        """The client the assembler queues requests on."""
        return self.assembler.client

    @property
    def generation(self) -> int:
        return self.channel.generation

    @property
    def closed(self) -> bool:
        return self._closed

    # -----------------------------------------------------------------------
    # Triggers
    # -----------------------------------------------------------------------

    def load(self, text: str | bytes) -> RenderTree:
        return self._publish(text, force=False)

    def edit(self, text: str | bytes) -> RenderTree:
        return self._publish(text, force=False)

    def reload(self, text: str | bytes | None = None) -> RenderTree:
        """Re-render, retrying failed artifacts even before their expiry."""
        return self._publish(self.text if text is None else text, force=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.channel.close()
        if self.client is not None:
            self.client.abandon(self.channel)
        self.tree = None
        self._listeners.clear()
        logger.debug("Closed %s", self.source_id)

    def _publish(self, text: str | bytes, *, force: bool) -> RenderTree:
        if self._closed:
            raise DocumentClosedError(f"{self.source_id} is closed")
        self.text = normalize_text(text)
        generation = self.channel.advance()
        self.tree = self.assembler.assemble(
            self.text,
            source_id=self.source_id,
            generation=generation,
            channel=self.channel,
            force=force,
        )
        if self.client is not None:
            self.client.abandon(self.channel)
        return self.tree

    # -----------------------------------------------------------------------
    # Completions
    # -----------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(tree, artifact)`` whenever an artifact of the current tree changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply_pending(self) -> int:
        """Apply every queued completion; return how many changed the current tree."""
        applied = 0
        while not self.channel.empty():
            update = self.channel.get_nowait()
            if update is not None and self._apply(update):
                applied += 1
        return applied

    async def run(self) -> None:
        """Apply completions as they arrive until the document is closed."""
        while not self._closed:
            update = await self.channel.get()
            if update is None:
                break
            self._apply(update)

    async def wait_for_artifacts(self, timeout: float) -> bool:
        """Apply completions until nothing is pending or ``timeout`` seconds pass."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.tree is not None and self.tree.pending_keys():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                update = await asyncio.wait_for(self.channel.get(), remaining)
            except asyncio.TimeoutError:
                return False
            if update is None:
                return False
            self._apply(update)
        return True

    def _apply(self, update: ArtifactUpdate) -> bool:
        tree = self.tree
        key = update.artifact.key
        if tree is None or update.generation != tree.generation or key not in tree.artifacts:
            logger.debug("Ignoring update %s for generation %d", key[:12], update.generation)
            return False
        tree.artifacts[key] = update.artifact
        for listener in list(self._listeners):
            listener(tree, update.artifact)
        return True
