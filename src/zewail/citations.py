"""Citation markers: inject source references into answer text.

The model reports citations as character spans of its answer plus the URI
of the grounding source.  :func:`inject` turns those spans into inline
markers of the form ``[N](citation:I)``:

- ``N`` is the 1-based number shown to the user;
- ``I`` is the 0-based index of the source in first-seen order.

The marker is an ordinary Markdown link with a reserved ``citation:``
pseudo-scheme, so any Markdown renderer can intercept it and swap in an
interactive element (see :func:`replace_markers`).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator

from zewail.models import Citation, Source

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"\[(\d+)\]\(citation:(\d+)\)")


# ---------------------------------------------------------------------------
# Marker token
# ---------------------------------------------------------------------------


def format_marker(source_index: int) -> str:
    """Return the marker token for the 0-based *source_index*."""
    return f"[{source_index + 1}](citation:{source_index})"


def find_markers(text: str) -> list[int]:
    """Return the 0-based source indices of all markers in *text*, in order."""
    return [int(m.group(2)) for m in _MARKER_RE.finditer(text)]


def replace_markers(text: str, replace: Callable[[int], str]) -> str:
    """Rewrite every marker in *text* with ``replace(source_index)``."""
    return _MARKER_RE.sub(lambda m: replace(int(m.group(2))), text)


# ---------------------------------------------------------------------------
# Injection
# ---------------------------------------------------------------------------


def _is_position(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def inject(
    content: str,
    citations: Iterable[Citation] | None,
    sources: Iterable[Source] | None,
) -> str:
    """Insert citation markers into *content*.

    Citations without a start position, or whose URI is not among
    *sources*, are dropped.  The rest are placed at ``end_index`` (falling
    back to ``start_index``) in ascending ``start_index`` order.  A citation
    whose insertion point lies before the previous one is skipped: for
    overlapping spans the first one processed wins.

    The skip test uses the raw insertion point; only the slices taken from
    *content* are clamped to its length.  A citation that runs past the end
    of the text lands at its end and moves the cursor past it, so later
    citations pointing before that raw position are skipped.
    """
    citations = list(citations or [])
    sources = list(sources or [])
    if not citations or not sources:
        return content

    source_index: dict[str, int] = {}
    for idx, source in enumerate(sources):
        source_index.setdefault(source.uri, idx)

    placed: list[tuple[int, int, int]] = []  # (start, insertion point, source idx)
    for c in citations:
        if not _is_position(c.start_index):
            logger.debug("Dropping unanchored citation for %s", c.uri)
            continue
        idx = source_index.get(c.uri)
        if idx is None:
            logger.debug("Dropping citation with unknown source %s", c.uri)
            continue
        point = c.end_index if _is_position(c.end_index) else c.start_index
        placed.append((c.start_index, point, idx))

    if not placed:
        return content

    # Stable sort: equal start positions keep their arrival order
    placed.sort(key=lambda p: p[0])

    n = len(content)
    parts: list[str] = []
    cursor = 0
    for _, point, idx in placed:
        if point < cursor:
            continue
        parts.append(content[min(cursor, n):min(point, n)])
        parts.append(format_marker(idx))
        cursor = point
    parts.append(content[min(cursor, n):])
    return "".join(parts)


# ---------------------------------------------------------------------------
# Incremental de-duplicating collections
# ---------------------------------------------------------------------------


class CitationCollection:
    """Citations seen so far, de-duplicated by ``(start_index, uri)``.

    The model re-sends citations for the same span as the stream
    progresses; the first one seen is kept.
    """

    def __init__(self, citations: Iterable[Citation] = ()) -> None:
        self._items: dict[tuple[int | None, str], Citation] = {}
        self.merge(citations)

    def merge(self, citations: Iterable[Citation]) -> int:
        """Add unseen citations; return how many were new."""
        added = 0
        for c in citations:
            key = (c.start_index, c.uri)
            if key not in self._items:
                self._items[key] = c
                added += 1
        return added

    def __iter__(self) -> Iterator[Citation]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def to_list(self) -> list[Citation]:
        return list(self._items.values())


class SourceCollection:
    """Grounding sources seen so far, de-duplicated by URI (first title wins)."""

    def __init__(self, sources: Iterable[Source] = ()) -> None:
        self._items: dict[str, Source] = {}
        self.merge(sources)

    def merge(self, sources: Iterable[Source]) -> int:
        """Add unseen sources; return how many were new."""
        added = 0
        for s in sources:
            if s.uri and s.uri not in self._items:
                self._items[s.uri] = s
                added += 1
        return added

    def __iter__(self) -> Iterator[Source]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def to_list(self) -> list[Source]:
        return list(self._items.values())
