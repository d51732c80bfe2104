"""Shared test fixtures.

Environment variables MUST be set at module level (before any zewail
modules are imported) because ``zewail.config`` evaluates
``_load_config()`` at import time.
"""

import os

# Set required env vars before any app code is imported
os.environ.setdefault("MODEL_ENDPOINT", "http://localhost:8088")
os.environ.setdefault("LIVE_CITATIONS", "true")
os.environ["COSMOS_ENDPOINT"] = ""

import pytest  # noqa: E402

from zewail.models import Citation, Source  # noqa: E402


@pytest.fixture
def sources() -> list[Source]:
    return [
        Source(title="Alpha", uri="https://a.example.com"),
        Source(title="Beta", uri="https://b.example.com"),
    ]


@pytest.fixture
def citation():
    """Factory for citations against the ``sources`` fixture URIs."""
    def _make(start: int | None, end: int | None, uri: str = "https://a.example.com") -> Citation:
        return Citation(uri=uri, start_index=start, end_index=end)
    return _make
