"""Reading-direction detection for rendered answers."""

from __future__ import annotations

import re

from zewail.models import Direction

# Arabic Unicode block
_RTL_RE = re.compile("[\u0600-\u06FF]")


def classify(text: str | None) -> Direction:
    """Return ``"rtl"`` if *text* contains any Arabic character, else ``"ltr"``."""
    if not text:
        return "ltr"
    return "rtl" if _RTL_RE.search(text) else "ltr"
