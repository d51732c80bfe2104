"""Shared data models for the answer pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Direction = Literal["ltr", "rtl"]


@dataclass(frozen=True)
class Source:
    """A grounding source (web document) the model attributed a claim to."""

    title: str
    uri: str


@dataclass(frozen=True)
class Citation:
    """A ``[start_index, end_index)`` span of the answer attributed to a source."""

    uri: str
    start_index: int | None = None
    end_index: int | None = None
    license: str | None = None


@dataclass(frozen=True)
class ComparisonTableData:
    """A comparison table split out of an answer.

    Every row has exactly ``len(headers)`` cells.
    """

    headers: list[str]
    rows: list[list[str]]

    def to_dict(self) -> dict:
        return {"headers": list(self.headers), "rows": [list(r) for r in self.rows]}


@dataclass
class StreamChunk:
    """One item of the model stream: a text delta plus grounding metadata."""

    text: str = ""
    sources: list[Source] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedContent:
    """What the render layer displays for a finished answer."""

    prose: str  # citation markers embedded
    table: ComparisonTableData | None
    direction: Direction


@dataclass(frozen=True)
class FinalView:
    """The persisted shape of a finished answer (raw prose, no markers)."""

    prose: str
    table: ComparisonTableData | None = None
    sources: list[Source] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
