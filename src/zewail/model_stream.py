"""Model stream adapter: Responses API events to :class:`StreamChunk`.

The answer is produced by an OpenAI-compatible Responses endpoint with the
web-search tool enabled.  Only its output contract matters here:

- ``response.output_text.delta`` carries text deltas;
- ``response.output_text.annotation.added`` carries ``url_citation``
  annotations (``url``, ``title``, ``start_index``, ``end_index``), which
  become one grounding :class:`Source` and one :class:`Citation` each;
- ``response.completed`` carries the full output, used only when no delta
  was streamed;
- ``response.failed`` / ``error`` end the stream with
  :class:`ModelStreamError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import Any

from openai import OpenAI

from zewail.config import config
from zewail.models import Citation, Source, StreamChunk

logger = logging.getLogger(__name__)


class ModelStreamError(RuntimeError):
    """The model endpoint reported a failed response."""


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _chunk_from_annotation(annotation: Any) -> StreamChunk | None:
    if _get(annotation, "type") != "url_citation":
        return None
    url = _get(annotation, "url") or ""
    if not url:
        return None
    return StreamChunk(
        sources=[Source(title=_get(annotation, "title") or url, uri=url)],
        citations=[Citation(
            uri=url,
            start_index=_get(annotation, "start_index"),
            end_index=_get(annotation, "end_index"),
        )],
    )


def _completed_text(response: Any) -> str:
    """Concatenate the text parts of a completed response."""
    parts: list[str] = []
    for output in _get(response, "output", None) or []:
        for content_item in _get(output, "content", None) or []:
            text = _get(content_item, "text", "")
            if text:
                parts.append(text)
    return "".join(parts)


def _error_message(event: Any) -> str:
    error = _get(_get(event, "response"), "error") or event
    return _get(error, "message", "") or "unknown error"


def chunks_from_events(events: Iterable[Any]) -> Iterator[StreamChunk]:
    """Translate Responses streaming events into stream chunks."""
    streamed_text = False
    for event in events:
        event_type = _get(event, "type")

        if event_type == "response.output_text.delta":
            delta = _get(event, "delta", "")
            if delta:
                streamed_text = True
                yield StreamChunk(text=delta)

        elif event_type == "response.output_text.annotation.added":
            chunk = _chunk_from_annotation(_get(event, "annotation"))
            if chunk is not None:
                yield chunk

        elif event_type == "response.completed":
            # Fallback: extract full text if streaming didn't capture it
            if not streamed_text:
                text = _completed_text(_get(event, "response"))
                if text:
                    yield StreamChunk(text=text)

        elif event_type in ("response.failed", "error"):
            message = _error_message(event)
            logger.error("Model stream failed: %s", message)
            raise ModelStreamError(message)


async def stream_answer(
    client: OpenAI,
    query: str,
    instructions: str | None = None,
) -> AsyncIterator[StreamChunk]:
    """Stream a web-grounded answer for *query* as chunks."""
    events = client.responses.create(
        model=config.model_name,
        input=query,
        instructions=instructions,
        tools=[{"type": "web_search"}],
        stream=True,
    )
    for chunk in chunks_from_events(events):
        yield chunk
        # Let other handlers (e.g. stop requests) run between chunks
        await asyncio.sleep(0)


def create_model_client() -> OpenAI:
    """Create the client used by :func:`stream_answer`.

    ``MODEL_ENDPOINT`` must serve the Responses API with the ``web_search``
    tool enabled.  A plain ``http://`` endpoint is a local proxy or mock
    that needs no key.  An ``https://`` endpoint is an Azure AI Foundry
    project, reached with an Entra bearer token.
    """
    endpoint = config.model_endpoint.rstrip("/")

    if endpoint.startswith("https://"):
        from azure.identity import DefaultAzureCredential, get_bearer_token_provider
        token_provider = get_bearer_token_provider(
            DefaultAzureCredential(), "https://ai.azure.com/.default"
        )
        client = OpenAI(
            base_url=endpoint,
            api_key=token_provider(),
        )
        logger.info("Web-search model %s via Foundry endpoint %s (Entra auth)", config.model_name, endpoint)
    else:
        client = OpenAI(
            base_url=endpoint,
            api_key="local",
        )
        logger.info("Web-search model %s via local endpoint %s (no auth)", config.model_name, endpoint)

    return client
