"""Zewail search assistant: Chainlit entry point.

The app streams a web-grounded answer from an OpenAI-compatible Responses
endpoint, feeds it through :class:`~zewail.pipeline.ResponsePipeline` and
renders the result: citation markers become clickable ``Source N``
references, a comparison table is rendered as Markdown, and the reading
direction travels in the message metadata.

Run with ``chainlit run src/zewail/main.py``.
"""

from __future__ import annotations

import logging
import os
import uuid

import chainlit as cl
from openai import OpenAI

from zewail.citations import replace_markers
from zewail.config import config
from zewail.history import HistoryStore, export_text, to_record
from zewail.model_stream import create_model_client, stream_answer
from zewail.models import FinalView, RenderedContent, Source
from zewail.pipeline import ResponsePipeline, ResponseRegistry, render
from zewail.tables import table_to_markdown

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
for _name in ("azure.core", "azure.cosmos", "azure.identity", "httpx", "watchfiles", "openai"):
    logging.getLogger(_name).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

_ERROR_MESSAGE = "Sorry, I couldn't complete that answer. Please try again."


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------

def _source_ref(index: int) -> str:
    """Element name for the 0-based source *index* (Chainlit auto-links it)."""
    return f"Source {index + 1}"


def _render_markers(text: str, sources: list[Source]) -> str:
    """Replace citation markers with ``Source N`` element references.

    A marker pointing past the source list is shown as plain ``[N]``.
    """
    def _replace(index: int) -> str:
        if 0 <= index < len(sources):
            return f" {_source_ref(index)}"
        return f"[{index + 1}]"

    return replace_markers(text, _replace)


def _build_message_content(rendered: RenderedContent, sources: list[Source]) -> str:
    """Final Markdown for the answer bubble: prose, then the table."""
    content = _render_markers(rendered.prose, sources)
    if rendered.table is not None:
        content = f"{content}\n\n{table_to_markdown(rendered.table)}".strip()
    return content


def _build_source_elements(sources: list[Source]) -> list[cl.Text]:
    """One side-panel element per grounding source."""
    return [
        cl.Text(
            name=_source_ref(idx),
            content=f"### {source.title}\n\n{source.uri}",
            display="side",
        )
        for idx, source in enumerate(sources)
    ]


def _apply_answer(
    msg: cl.Message,
    view: FinalView,
    rendered: RenderedContent,
    response_id: str,
) -> None:
    """Fill *msg* with a finished answer: content, sources, direction, actions."""
    msg.content = _build_message_content(rendered, view.sources)
    msg.elements = _build_source_elements(view.sources)  # type: ignore[assignment]
    msg.metadata = {"direction": rendered.direction, "response_id": response_id}
    msg.actions = [
        cl.Action(name="export_answer", payload={"response_id": response_id}, label="Export"),
        cl.Action(name="show_history", payload={}, label="History"),
    ]


def _remember_export(response_id: str, query: str, view: FinalView) -> None:
    exports: dict = cl.user_session.get("exports") or {}
    exports[response_id] = export_text(query, view)
    cl.user_session.set("exports", exports)


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------

_HISTORY_COMMAND = "/history"
_HISTORY_LABEL_MAX_CHARS = 40


def _history_label(record: dict) -> str:
    title = record.get("title") or record.get("query") or record.get("id", "")
    if len(title) > _HISTORY_LABEL_MAX_CHARS:
        title = title[: _HISTORY_LABEL_MAX_CHARS - 3] + "..."
    return title


def _history_actions(records: list[dict]) -> list[cl.Action]:
    """An open and a delete action per listed record."""
    actions: list[cl.Action] = []
    for record in records:
        label = _history_label(record)
        payload = {"record_id": record["id"], "query": record.get("query") or label}
        actions.append(cl.Action(name="open_history", payload=payload, label=f"Open: {label}"))
        actions.append(cl.Action(name="delete_history", payload=payload, label=f"Delete: {label}"))
    return actions


def _session_history() -> tuple[HistoryStore | None, str]:
    history: HistoryStore | None = cl.user_session.get("history")
    user_id = cl.user_session.get("user_id") or "local-user"
    return history, user_id


async def _send_history_list() -> None:
    """Post the user's past searches with open/delete actions."""
    history, user_id = _session_history()
    if history is None or not history.enabled:
        await cl.Message(content="Search history is not available.").send()
        return

    records = await history.list_for_user(user_id)
    if not records:
        await cl.Message(content="No past searches yet.").send()
        return

    lines = [f"{idx}. {_history_label(r)}" for idx, r in enumerate(records, 1)]
    await cl.Message(
        content="**Past searches**\n\n" + "\n".join(lines),
        actions=_history_actions(records),
    ).send()


# ---------------------------------------------------------------------------
# User identity helper
# ---------------------------------------------------------------------------

def _get_user_id() -> str:
    """Extract user identity for the current session.

    Prefers the Chainlit-authenticated user, falls back to ``"local-user"``.
    """
    try:
        user = cl.user_session.get("user")
        if user and getattr(user, "identifier", None):
            return user.identifier
    except Exception:
        logger.debug("No Chainlit user in session", exc_info=True)
    return "local-user"


# ---------------------------------------------------------------------------
# Authentication: header-based (local dev auto-accepts)
# ---------------------------------------------------------------------------

def _is_auth_enabled() -> bool:
    """Return True when Chainlit has a JWT secret, i.e. login is possible."""
    return bool(os.environ.get("CHAINLIT_AUTH_SECRET"))


if _is_auth_enabled():
    @cl.header_auth_callback
    async def header_auth_callback(headers: dict) -> cl.User | None:
        """Trust the proxy's principal header; otherwise act as ``local-user``."""
        principal = headers.get("x-ms-client-principal-id")
        if principal:
            display = headers.get("x-ms-client-principal-name", principal)
            return cl.User(identifier=principal, metadata={"display_name": display})
        return cl.User(identifier="local-user", metadata={"provider": "header"})


# ---------------------------------------------------------------------------
# Chainlit lifecycle hooks
# ---------------------------------------------------------------------------

@cl.set_starters
async def set_starters() -> list[cl.Starter]:
    """Provide suggested queries on the welcome screen."""
    return [
        cl.Starter(
            label="Compare",
            message="Compare the latest electric SUVs by range, price and charging speed.",
        ),
        cl.Starter(
            label="Explain",
            message="How do solid-state batteries differ from lithium-ion batteries?",
        ),
        cl.Starter(
            label="بالعربية",
            message="ما هي أحدث التطورات في الذكاء الاصطناعي؟",
        ),
        cl.Starter(
            label="History",
            message=_HISTORY_COMMAND,
        ),
    ]


@cl.on_chat_start
async def on_chat_start() -> None:
    """Initialise per-session model client, response registry and history."""
    cl.user_session.set("client", create_model_client())
    cl.user_session.set("registry", ResponseRegistry())
    cl.user_session.set("history", HistoryStore())
    cl.user_session.set("user_id", _get_user_id())
    cl.user_session.set("exports", {})
    logger.info("New chat session started (model endpoint: %s)", config.model_endpoint)


@cl.on_stop
async def on_stop() -> None:
    """The user pressed stop: cancel the in-flight answer."""
    registry: ResponseRegistry | None = cl.user_session.get("registry")
    if registry is not None:
        registry.cancel_current()


@cl.on_message
async def on_message(message: cl.Message) -> None:
    """Handle an incoming query: stream, post-process and render the answer."""
    if message.content.strip() == _HISTORY_COMMAND:
        await _send_history_list()
        return

    client: OpenAI = cl.user_session.get("client")  # type: ignore[assignment]
    registry: ResponseRegistry = cl.user_session.get("registry")  # type: ignore[assignment]

    response_id = uuid.uuid4().hex
    token = registry.start(response_id)
    pipeline = ResponsePipeline(response_id, token=token, live_citations=config.live_citations)

    msg = cl.Message(content="")
    await msg.send()  # renders the bubble with the thinking indicator

    async def _on_update(p: ResponsePipeline, live_view: str) -> None:
        # A newer query may have taken over this session
        if not registry.is_current(p.response_id):
            return
        msg.content = _render_markers(live_view, p.sources.to_list())
        await msg.update()

    try:
        rendered = await pipeline.consume(stream_answer(client, message.content), _on_update)
    except Exception as e:
        logger.error("Error streaming answer: %s", e, exc_info=True)
        if registry.is_current(response_id):
            msg.content = _ERROR_MESSAGE
            await msg.update()
        registry.finish(response_id)
        return

    if rendered is None:
        logger.info("Response %s cancelled", response_id)
        return

    if not registry.is_current(response_id):
        logger.info("Response %s superseded, not rendering", response_id)
        return
    registry.finish(response_id)

    view = pipeline.final_view()
    if not view.prose and view.table is None:
        msg.content = "I wasn't able to generate a response. Please try again."
        await msg.update()
        return

    _apply_answer(msg, view, rendered, response_id)
    await msg.update()
    _remember_export(response_id, message.content, view)

    history, user_id = _session_history()
    if history is None:
        return
    record = to_record(view, query=message.content, user_id=user_id, record_id=response_id)
    try:
        await history.save(record)
    except Exception:
        logger.warning("Answer %s not saved to history", response_id)


@cl.action_callback("export_answer")
async def on_export(action: cl.Action) -> None:
    """Send the plain-text export of an answer as a file."""
    exports: dict = cl.user_session.get("exports") or {}
    response_id = action.payload.get("response_id", "")
    content = exports.get(response_id)
    if content is None:
        logger.warning("No export available for response %s", response_id)
        return
    await cl.Message(
        content="Here is your export.",
        elements=[
            cl.File(
                name=f"zewail-answer-{response_id[:8]}.txt",
                content=content.encode("utf-8"),
                mime="text/plain",
                display="inline",
            )
        ],
    ).send()


@cl.action_callback("show_history")
async def on_show_history(action: cl.Action) -> None:
    await _send_history_list()


@cl.action_callback("open_history")
async def on_open_history(action: cl.Action) -> None:
    """Re-render a stored answer exactly as a fresh one would look."""
    history, user_id = _session_history()
    record_id = action.payload.get("record_id", "")
    view = await history.load(record_id, user_id) if history is not None else None
    if view is None:
        await cl.Message(content="That search is no longer in your history.").send()
        return

    rendered = render(view)
    msg = cl.Message(content="")
    _apply_answer(msg, view, rendered, record_id)
    _remember_export(record_id, action.payload.get("query", ""), view)
    await msg.send()
    logger.info("Reopened history record %s", record_id)


@cl.action_callback("delete_history")
async def on_delete_history(action: cl.Action) -> None:
    history, user_id = _session_history()
    record_id = action.payload.get("record_id", "")
    deleted = await history.delete(record_id, user_id) if history is not None else False
    if deleted:
        await action.remove()
        await cl.Message(content="Search removed from your history.").send()
    else:
        await cl.Message(content="That search was already gone.").send()
