"""Per-response orchestration of the streamed answer.

A :class:`ResponsePipeline` owns one in-flight answer::

    STREAMING ──(stream ends)──▶ FINALIZING ──▶ DONE
        │
        └──(cancelled / stream error)──▶ ABORTED

While streaming, text deltas are appended in arrival order and citation /
source metadata is merged into de-duplicating collections.  The live view
(text with citation markers) can be recomputed after every chunk; it is a
pure function of the accumulated state.

Finalization runs table extraction once on the raw text, then citation
injection once on the remaining prose.  Extraction must see the text
before markers are added.

Cancellation is cooperative: a :class:`CancellationToken` is checked before
each chunk is applied.  :class:`ResponseRegistry` guarantees that at most
one response per chat session is current, so late chunks from a cancelled
stream never reach the display.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterable, Awaitable, Callable

from zewail.citations import CitationCollection, SourceCollection, inject
from zewail.models import FinalView, RenderedContent, StreamChunk
from zewail.tables import extract
from zewail.text_direction import classify

logger = logging.getLogger(__name__)


class PipelineStateError(RuntimeError):
    """Raised when a pipeline operation is invalid in its current state."""


class ResponseState(str, enum.Enum):
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


class CancellationToken:
    """Cooperative cancellation flag shared between a stream and its owner."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ResponseRegistry:
    """Tracks the single current response of a chat session."""

    def __init__(self) -> None:
        self._current_id: str | None = None
        self._token: CancellationToken | None = None

    def start(self, response_id: str) -> CancellationToken:
        """Make *response_id* current, cancelling any response still in flight."""
        self.cancel_current()
        self._current_id = response_id
        self._token = CancellationToken()
        return self._token

    def is_current(self, response_id: str) -> bool:
        return (
            self._current_id == response_id
            and self._token is not None
            and not self._token.cancelled
        )

    def cancel_current(self) -> None:
        if self._token is not None and not self._token.cancelled:
            logger.info("Cancelling in-flight response %s", self._current_id)
            self._token.cancel()

    def finish(self, response_id: str) -> None:
        """Forget *response_id* if it is still the current response."""
        if self._current_id == response_id:
            self._current_id = None
            self._token = None


def render(view: FinalView) -> RenderedContent:
    """Build the render view of a finished (or re-hydrated) answer."""
    prose = inject(view.prose, view.citations, view.sources)
    return RenderedContent(prose=prose, table=view.table, direction=classify(prose))


UpdateCallback = Callable[["ResponsePipeline", str], Awaitable[None]]


class ResponsePipeline:
    """Accumulates one streamed answer and turns it into renderable content."""

    def __init__(
        self,
        response_id: str,
        token: CancellationToken | None = None,
        live_citations: bool = True,
    ) -> None:
        self.response_id = response_id
        self.token = token or CancellationToken()
        self.live_citations = live_citations
        self.state = ResponseState.STREAMING
        self._parts: list[str] = []
        self.citations = CitationCollection()
        self.sources = SourceCollection()
        self._final: FinalView | None = None
        self._rendered: RenderedContent | None = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    # -- streaming ---------------------------------------------------------

    def apply_chunk(self, chunk: StreamChunk) -> str | None:
        """Apply *chunk* and return the new live view.

        Returns ``None`` (and applies nothing) once the pipeline has left
        STREAMING or its token has been cancelled.
        """
        if self.state is not ResponseState.STREAMING or self.token.cancelled:
            return None
        if chunk.text:
            self._parts.append(chunk.text)
        self.sources.merge(chunk.sources)
        self.citations.merge(chunk.citations)
        return self.live_view()

    def live_view(self) -> str:
        """Accumulated text, with citation markers if live citations are on."""
        text = self.text
        if not self.live_citations:
            return text
        return inject(text, self.citations, self.sources)

    async def consume(
        self,
        stream: AsyncIterable[StreamChunk],
        on_update: UpdateCallback | None = None,
    ) -> RenderedContent | None:
        """Drain *stream* into the pipeline.

        Returns the final render view, or ``None`` if the response was
        cancelled.  Exceptions raised by the stream propagate after the
        pipeline has been aborted.
        """
        try:
            async for chunk in stream:
                if self.token.cancelled:
                    break
                view = self.apply_chunk(chunk)
                if view is not None and on_update is not None:
                    await on_update(self, view)
        except BaseException:
            self.abort()
            raise

        if self.token.cancelled:
            self.abort()
            return None
        return self.finalize()

    # -- terminal transitions ---------------------------------------------

    def abort(self) -> None:
        if self.state is ResponseState.ABORTED:
            return
        if self.state is not ResponseState.STREAMING:
            raise PipelineStateError(f"cannot abort a response in state {self.state.value}")
        self.state = ResponseState.ABORTED
        logger.info(
            "Response %s aborted after %d chars (not persisted)",
            self.response_id,
            len(self.text),
        )

    def finalize(self) -> RenderedContent:
        """Split out the table and inject citations into the remaining prose."""
        if self.state is not ResponseState.STREAMING:
            raise PipelineStateError(f"cannot finalize a response in state {self.state.value}")
        self.state = ResponseState.FINALIZING

        extracted = extract(self.text)
        self._final = FinalView(
            prose=extracted.remaining_text,
            table=extracted.table,
            sources=self.sources.to_list(),
            citations=self.citations.to_list(),
        )
        self._rendered = render(self._final)
        self.state = ResponseState.DONE
        logger.info(
            "Response %s finalized: %d chars, %d sources, %d citations, table=%s",
            self.response_id,
            len(self._final.prose),
            len(self._final.sources),
            len(self._final.citations),
            self._final.table is not None,
        )
        return self._rendered

    # -- results -----------------------------------------------------------

    def final_view(self) -> FinalView:
        if self.state is not ResponseState.DONE or self._final is None:
            raise PipelineStateError(f"no final view in state {self.state.value}")
        return self._final

    def rendered(self) -> RenderedContent:
        if self.state is not ResponseState.DONE or self._rendered is None:
            raise PipelineStateError(f"no rendered content in state {self.state.value}")
        return self._rendered
