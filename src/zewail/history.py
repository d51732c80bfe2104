"""Search history: persisted answer records in Azure Cosmos DB.

A finished answer is stored already split: raw prose (no citation
markers), the comparison table, the grounding sources and the raw
citations.  Rendering recomputes markers and direction on load.

Older records only carry the raw ``answer`` text; those are split with the
table extractor when they are loaded.

The container is partitioned by ``/userId``.  When Cosmos DB is not
configured the store runs in degraded mode: reads return nothing and
writes are skipped.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from azure.cosmos import CosmosClient
from azure.cosmos.exceptions import CosmosResourceNotFoundError

from zewail.config import config
from zewail.models import Citation, ComparisonTableData, FinalView, Source
from zewail.tables import extract, table_to_markdown

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 80


# ---------------------------------------------------------------------------
# Record (de)serialisation
# ---------------------------------------------------------------------------


def parse_sources(raw: Any) -> list[Source]:
    """Leniently parse stored sources (JSON string or list of dicts)."""
    if not raw:
        return []
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(data, list):
        return []
    return [
        Source(title=item["title"], uri=item["uri"])
        for item in data
        if isinstance(item, dict)
        and isinstance(item.get("title"), str)
        and isinstance(item.get("uri"), str)
    ]


def _parse_citations(raw: Any) -> list[Citation]:
    if not isinstance(raw, list):
        return []
    citations: list[Citation] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("uri"), str):
            continue
        citations.append(Citation(
            uri=item["uri"],
            start_index=item.get("startIndex"),
            end_index=item.get("endIndex"),
            license=item.get("license"),
        ))
    return citations


def _parse_table(raw: Any) -> ComparisonTableData | None:
    if not isinstance(raw, dict):
        return None
    headers, rows = raw.get("headers"), raw.get("rows")
    if not isinstance(headers, list) or not headers:
        return None
    if not isinstance(rows, list) or not rows:
        return None
    if not all(isinstance(r, list) and len(r) == len(headers) for r in rows):
        logger.warning("Stored table has malformed rows, ignoring it")
        return None
    return ComparisonTableData(
        headers=[str(h) for h in headers],
        rows=[[str(c) for c in r] for r in rows],
    )


def to_record(
    view: FinalView,
    *,
    query: str,
    user_id: str,
    record_id: str | None = None,
) -> dict:
    """Build the Cosmos document for a finished answer."""
    return {
        "id": record_id or uuid.uuid4().hex,
        "userId": user_id,
        "query": query,
        "title": query.strip()[:_TITLE_MAX_CHARS],
        "prose": view.prose,
        "table": view.table.to_dict() if view.table else None,
        "sources": [{"title": s.title, "uri": s.uri} for s in view.sources],
        "citations": [
            {
                "uri": c.uri,
                "startIndex": c.start_index,
                "endIndex": c.end_index,
                "license": c.license,
            }
            for c in view.citations
        ],
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }


def from_record(doc: dict) -> FinalView:
    """Re-hydrate a stored record.

    Split records are used as stored.  Legacy records (raw ``answer``
    text only) are run through the table extractor.
    """
    sources = parse_sources(doc.get("sources"))
    if "prose" in doc:
        return FinalView(
            prose=doc.get("prose") or "",
            table=_parse_table(doc.get("table")),
            sources=sources,
            citations=_parse_citations(doc.get("citations")),
        )

    logger.info("Re-parsing legacy history record %s", doc.get("id", "?"))
    extracted = extract(doc.get("answer") or "")
    return FinalView(
        prose=extracted.remaining_text,
        table=extracted.table,
        sources=sources,
        citations=[],
    )


def export_text(query: str, view: FinalView) -> str:
    """Plain-text export of a question and its answer."""
    content = f"Query: {query}\n\n"
    content += f"Answer:\n{view.prose}\n\n"
    if view.table:
        content += f"Table:\n{table_to_markdown(view.table)}\n\n"
    if view.sources:
        content += "Sources:\n"
        for idx, source in enumerate(view.sources, 1):
            content += f"{idx}. {source.title}: {source.uri}\n"
    return content


# ---------------------------------------------------------------------------
# Cosmos client singleton
# ---------------------------------------------------------------------------

_cosmos_client: CosmosClient | None = None


def _get_cosmos_client() -> CosmosClient | None:
    """Lazy singleton for the CosmosClient (``None`` when not configured)."""
    global _cosmos_client
    if not config.cosmos_endpoint:
        return None
    if _cosmos_client is None:
        from azure.identity import DefaultAzureCredential
        try:
            _cosmos_client = CosmosClient(config.cosmos_endpoint, credential=DefaultAzureCredential())
        except Exception:
            logger.warning("Could not create Cosmos client: history disabled", exc_info=True)
            return None
    return _cosmos_client


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class HistoryStore:
    """Async CRUD for search-history records."""

    def __init__(self) -> None:
        client = _get_cosmos_client()
        if client is None:
            self._container = None
            logger.info("Cosmos DB not configured: search history disabled")
            return
        database = client.get_database_client(config.cosmos_database_name)
        self._container = database.get_container_client(config.cosmos_container_name)

    @property
    def enabled(self) -> bool:
        return self._container is not None

    async def save(self, record: dict) -> dict | None:
        """Upsert *record*; returns it, or ``None`` in degraded mode."""
        if self._container is None:
            logger.debug("History disabled: not saving record %s", record.get("id"))
            return None
        try:
            self._container.upsert_item(record)
        except Exception:
            logger.error("Failed to save history record %s", record.get("id"), exc_info=True)
            raise
        logger.info("Saved history record %s", record["id"])
        return record

    async def load(self, record_id: str, user_id: str) -> FinalView | None:
        if self._container is None:
            return None
        try:
            doc = self._container.read_item(item=record_id, partition_key=user_id)
        except CosmosResourceNotFoundError:
            return None
        return from_record(doc)

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[dict]:
        """Most recent records of *user_id* (``id``, ``title``, ``createdAt``)."""
        if self._container is None:
            return []
        items = self._container.query_items(
            query=(
                "SELECT c.id, c.title, c.query, c.createdAt FROM c "
                "WHERE c.userId = @userId ORDER BY c.createdAt DESC"
            ),
            parameters=[{"name": "@userId", "value": user_id}],
            partition_key=user_id,
        )
        result: list[dict] = []
        for item in items:
            result.append(item)
            if len(result) >= limit:
                break
        return result

    async def delete(self, record_id: str, user_id: str) -> bool:
        """Delete a record; ``False`` if it did not exist."""
        if self._container is None:
            return False
        try:
            self._container.delete_item(item=record_id, partition_key=user_id)
        except CosmosResourceNotFoundError:
            return False
        logger.info("Deleted history record %s", record_id)
        return True
