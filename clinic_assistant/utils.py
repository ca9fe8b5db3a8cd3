"""Small text helpers shared across the package."""

from __future__ import annotations

import html
import re

_CONTROL_WS_RE = re.compile(r"[\r\n\t]")

MAX_LOG_CHARS = 200


def sanitize_for_log(text: str | None) -> str:
    """Single-line, HTML-escaped, length-capped version of user text for log lines."""
    flattened = _CONTROL_WS_RE.sub(" ", text or "")
    return html.escape(flattened, quote=True)[:MAX_LOG_CHARS]
