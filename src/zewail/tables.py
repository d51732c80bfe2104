"""Comparison-table extraction from finished answers.

The model is asked to return comparison tables as a fenced JSON block::

    ```json
    {"text": "Short summary.", "table": {"headers": [...], "rows": [[...]]}}
    ```

but frequently answers with a plain Markdown grid instead.  Both forms are
split out of the prose here:

1. **Structured block**: the first fenced block whose payload carries a
   valid ``table``.  Text inside the payload (``text``) is appended to the
   prose outside the block.
2. **Grid fallback**: the first header line immediately followed by a
   separator line (``| --- | :-: |``), plus the contiguous data rows after it.

Nothing here raises on malformed content; "no table" is a normal outcome.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from zewail.models import ComparisonTableData

logger = logging.getLogger(__name__)

# First fenced block, optional language tag
_FENCED_BLOCK_RE = re.compile(r"```(?:[\w+-]+)?\s*(.*?)\s*```", re.DOTALL)

# One separator segment: optional colon, dashes, optional colon
_SEPARATOR_SEGMENT_RE = re.compile(r"^\s*:?-+:?\s*$")


@dataclass(frozen=True)
class ExtractionResult:
    """Prose left after removing the table, and the table (or ``None``)."""

    remaining_text: str
    table: ComparisonTableData | None


# ---------------------------------------------------------------------------
# Structured payload validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidTable:
    table: ComparisonTableData
    text: str


@dataclass(frozen=True)
class InvalidTable:
    reason: str


@dataclass(frozen=True)
class NoTable:
    """Payload parsed fine but carries no ``table`` key."""


PayloadResult = ValidTable | InvalidTable | NoTable


def _cell(value: object) -> str:
    return "" if value is None else str(value).strip()


def parse_table_payload(payload: str) -> PayloadResult:
    """Parse and shape-check the JSON payload of a fenced block."""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        return InvalidTable(f"malformed JSON: {e}")

    if not isinstance(data, dict) or "table" not in data:
        return NoTable()

    raw = data["table"]
    if not isinstance(raw, dict):
        return InvalidTable("table is not an object")
    headers, rows = raw.get("headers"), raw.get("rows")
    if not isinstance(headers, list) or not isinstance(rows, list):
        return InvalidTable("headers/rows are not arrays")
    if not headers or not rows:
        return InvalidTable("empty headers or rows")
    if any(not isinstance(r, list) or len(r) != len(headers) for r in rows):
        return InvalidTable("row width does not match headers")

    text = data.get("text")
    return ValidTable(
        table=ComparisonTableData(
            headers=[_cell(h) for h in headers],
            rows=[[_cell(c) for c in r] for r in rows],
        ),
        text=text.strip() if isinstance(text, str) else "",
    )


# ---------------------------------------------------------------------------
# Line predicates (grid scanner)
# ---------------------------------------------------------------------------


def _strip_outer_pipes(line: str) -> str:
    line = line.strip()
    if line.startswith("|"):
        line = line[1:]
    if line.endswith("|"):
        line = line[:-1]
    return line


def split_cells(line: str) -> list[str]:
    """Split a grid line into trimmed cells, ignoring one outer pipe per side."""
    return [cell.strip() for cell in _strip_outer_pipes(line).split("|")]


def is_separator_line(line: str) -> bool:
    """Return ``True`` for a header separator such as ``| --- | :---: |``."""
    if "|" not in line or "-" not in line:
        return False
    segments = _strip_outer_pipes(line).split("|")
    return len(segments) > 0 and all(_SEPARATOR_SEGMENT_RE.match(s) for s in segments)


def is_row_line(line: str, width: int) -> bool:
    """Return ``True`` if *line* is a data row with exactly *width* cells."""
    return "|" in line and len(split_cells(line)) == width


def parse_grid_table(text: str) -> ExtractionResult:
    """Extract the first Markdown grid table from *text*.

    Only the first header/separator pair is considered; if no data row
    follows it there is no table.
    """
    lines = text.split("\n")

    for i in range(len(lines) - 1):
        separator = lines[i + 1]
        if not is_separator_line(separator):
            continue
        headers = split_cells(lines[i])
        if len(headers) != len(split_cells(separator)):
            continue

        rows: list[list[str]] = []
        end = i + 1
        for j in range(i + 2, len(lines)):
            if not is_row_line(lines[j], len(headers)):
                break
            rows.append(split_cells(lines[j]))
            end = j

        if not rows:
            return ExtractionResult(remaining_text=text, table=None)

        before, after = lines[:i], lines[end + 1:]
        # Keep a single blank line where the table used to be
        if before and after and not before[-1].strip() and not after[0].strip():
            after = after[1:]
        return ExtractionResult(
            remaining_text="\n".join(before + after).strip(),
            table=ComparisonTableData(headers=headers, rows=rows),
        )

    return ExtractionResult(remaining_text=text, table=None)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract(response_text: str) -> ExtractionResult:
    """Split a finished answer into prose and an optional comparison table."""
    if not response_text:
        return ExtractionResult(remaining_text=response_text or "", table=None)

    text = response_text.strip()
    match = _FENCED_BLOCK_RE.search(text)
    if match and match.group(1):
        outside = (text[: match.start()] + text[match.end():]).strip()
        result = parse_table_payload(match.group(1))

        if isinstance(result, ValidTable):
            combined = "\n\n".join(part for part in (outside, result.text) if part)
            return ExtractionResult(remaining_text=combined, table=result.table)

        if isinstance(result, InvalidTable):
            logger.debug("Ignoring fenced table block: %s", result.reason)
            grid = parse_grid_table(outside)
            if grid.table is not None:
                return grid

    return parse_grid_table(response_text)


def table_to_markdown(table: ComparisonTableData) -> str:
    """Render *table* as a Markdown grid."""
    lines = [
        "| " + " | ".join(table.headers) + " |",
        "| " + " | ".join("---" for _ in table.headers) + " |",
    ]
    lines.extend("| " + " | ".join(row) + " |" for row in table.rows)
    return "\n".join(lines)
