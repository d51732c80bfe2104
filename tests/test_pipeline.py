"""Tests for zewail.pipeline: streaming state machine and cancellation."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from zewail.models import Citation, ComparisonTableData, FinalView, Source, StreamChunk
from zewail.pipeline import (
    CancellationToken,
    PipelineStateError,
    ResponsePipeline,
    ResponseRegistry,
    ResponseState,
    render,
)

_A = "https://a.example.com"
_B = "https://b.example.com"


async def _stream(*chunks: StreamChunk) -> AsyncIterator[StreamChunk]:
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Registry / token
# ---------------------------------------------------------------------------


class TestResponseRegistry:

    def test_start_makes_current(self) -> None:
        registry = ResponseRegistry()
        registry.start("r1")
        assert registry.is_current("r1")
        assert not registry.is_current("r2")

    def test_new_response_cancels_previous(self) -> None:
        registry = ResponseRegistry()
        first = registry.start("r1")
        registry.start("r2")
        assert first.cancelled
        assert not registry.is_current("r1")
        assert registry.is_current("r2")

    def test_cancel_current(self) -> None:
        registry = ResponseRegistry()
        token = registry.start("r1")
        registry.cancel_current()
        assert token.cancelled
        assert not registry.is_current("r1")

    def test_finish_only_forgets_matching_id(self) -> None:
        registry = ResponseRegistry()
        registry.start("r2")
        registry.finish("r1")
        assert registry.is_current("r2")
        registry.finish("r2")
        assert not registry.is_current("r2")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestApplyChunk:

    def test_accumulates_text_in_order(self) -> None:
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(text="Hello "))
        p.apply_chunk(StreamChunk(text="world"))
        assert p.text == "Hello world"

    def test_live_view_has_markers(self) -> None:
        p = ResponsePipeline("r")
        view = p.apply_chunk(StreamChunk(
            text="Fact one.",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=9)],
        ))
        assert view == "Fact one.[1](citation:0)"

    def test_live_view_without_live_citations(self) -> None:
        p = ResponsePipeline("r", live_citations=False)
        view = p.apply_chunk(StreamChunk(
            text="Fact one.",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=9)],
        ))
        assert view == "Fact one."

    def test_live_view_is_idempotent(self) -> None:
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(
            text="Fact.",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=5)],
        ))
        assert p.live_view() == p.live_view()
        assert p.text == "Fact."
        assert len(p.citations) == 1

    def test_resent_metadata_is_deduplicated(self) -> None:
        p = ResponsePipeline("r")
        chunk = StreamChunk(
            text="x",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=1)],
        )
        p.apply_chunk(chunk)
        p.apply_chunk(StreamChunk(
            sources=[Source("A renamed", _A), Source("B", _B)],
            citations=[Citation(uri=_A, start_index=0, end_index=1)],
        ))
        assert [s.title for s in p.sources] == ["A", "B"]
        assert len(p.citations) == 1

    def test_ignored_after_cancel(self) -> None:
        token = CancellationToken()
        p = ResponsePipeline("r", token=token)
        p.apply_chunk(StreamChunk(text="kept"))
        token.cancel()
        assert p.apply_chunk(StreamChunk(text=" dropped")) is None
        assert p.text == "kept"


# ---------------------------------------------------------------------------
# consume()
# ---------------------------------------------------------------------------


class TestConsume:

    @pytest.mark.asyncio
    async def test_runs_to_done(self) -> None:
        p = ResponsePipeline("r")
        rendered = await p.consume(_stream(
            StreamChunk(text="مرحبا "),
            StreamChunk(text="بالعالم"),
        ))
        assert p.state is ResponseState.DONE
        assert rendered is not None
        assert rendered.direction == "rtl"
        assert rendered.table is None

    @pytest.mark.asyncio
    async def test_on_update_called_per_chunk(self) -> None:
        p = ResponsePipeline("r")
        seen: list[str] = []

        async def on_update(pipeline: ResponsePipeline, view: str) -> None:
            assert pipeline is p
            seen.append(view)

        await p.consume(_stream(StreamChunk(text="a"), StreamChunk(text="b")), on_update)
        assert seen == ["a", "ab"]

    @pytest.mark.asyncio
    async def test_cancellation_aborts(self) -> None:
        token = CancellationToken()
        p = ResponsePipeline("r", token=token)

        async def on_update(pipeline: ResponsePipeline, view: str) -> None:
            token.cancel()

        rendered = await p.consume(
            _stream(StreamChunk(text="one"), StreamChunk(text="two")),
            on_update,
        )
        assert rendered is None
        assert p.state is ResponseState.ABORTED
        assert p.text == "one"
        with pytest.raises(PipelineStateError):
            p.final_view()

    @pytest.mark.asyncio
    async def test_stream_error_aborts_and_propagates(self) -> None:
        async def failing() -> AsyncIterator[StreamChunk]:
            yield StreamChunk(text="partial")
            raise RuntimeError("connection reset")

        p = ResponsePipeline("r")
        with pytest.raises(RuntimeError, match="connection reset"):
            await p.consume(failing())
        assert p.state is ResponseState.ABORTED

    @pytest.mark.asyncio
    async def test_superseded_response_does_not_update_display(self) -> None:
        registry = ResponseRegistry()
        display: dict[str, str] = {}

        async def on_update(pipeline: ResponsePipeline, view: str) -> None:
            if registry.is_current(pipeline.response_id):
                display["content"] = view

        old = ResponsePipeline("old", token=registry.start("old"))
        old.apply_chunk(StreamChunk(text="stale"))
        new = ResponsePipeline("new", token=registry.start("new"))

        await new.consume(_stream(StreamChunk(text="fresh")), on_update)
        assert await old.consume(_stream(StreamChunk(text=" late")), on_update) is None
        assert display["content"] == "fresh"


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


class TestFinalize:

    def test_table_extracted_before_injection(self) -> None:
        text = "Summary line.\n\n| A | B |\n| --- | --- |\n| 1 | 2 |"
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(
            text=text,
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=13)],
        ))
        rendered = p.finalize()
        assert rendered.table == ComparisonTableData(headers=["A", "B"], rows=[["1", "2"]])
        assert rendered.prose == "Summary line.[1](citation:0)"
        assert rendered.direction == "ltr"

    def test_citations_indexing_removed_table_are_skipped(self) -> None:
        text = "Intro.\n\n| A | B |\n| --- | --- |\n| 1 | 2 |\n\nOutro sentence here."
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(
            text=text,
            sources=[Source("A", _A), Source("B", _B)],
            citations=[
                Citation(uri=_A, start_index=40, end_index=60),
                Citation(uri=_B, start_index=45, end_index=50),
            ],
        ))
        rendered = p.finalize()
        assert rendered.table == ComparisonTableData(headers=["A", "B"], rows=[["1", "2"]])
        assert rendered.prose == "Intro.\n\nOutro sentence here.[1](citation:0)"

    def test_final_view_keeps_raw_prose(self) -> None:
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(
            text="Fact.",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=5)],
        ))
        p.finalize()
        view = p.final_view()
        assert view.prose == "Fact."
        assert view.sources == [Source("A", _A)]
        assert len(view.citations) == 1
        assert p.rendered().prose == "Fact.[1](citation:0)"

    def test_finalize_only_once(self) -> None:
        p = ResponsePipeline("r")
        p.finalize()
        with pytest.raises(PipelineStateError):
            p.finalize()

    def test_no_finalize_after_abort(self) -> None:
        p = ResponsePipeline("r")
        p.abort()
        p.abort()  # no-op
        with pytest.raises(PipelineStateError):
            p.finalize()

    def test_cannot_abort_when_done(self) -> None:
        p = ResponsePipeline("r")
        p.finalize()
        with pytest.raises(PipelineStateError):
            p.abort()

    def test_chunks_ignored_after_done(self) -> None:
        p = ResponsePipeline("r")
        p.apply_chunk(StreamChunk(text="final"))
        p.finalize()
        assert p.apply_chunk(StreamChunk(text=" extra")) is None
        assert p.final_view().prose == "final"


class TestRender:

    def test_render_from_stored_view(self) -> None:
        view = FinalView(
            prose="Stored.",
            sources=[Source("A", _A)],
            citations=[Citation(uri=_A, start_index=0, end_index=7)],
        )
        rendered = render(view)
        assert rendered.prose == "Stored.[1](citation:0)"
        assert rendered.direction == "ltr"
