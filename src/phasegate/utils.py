"""Provide utility helpers for timestamps and text."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower())
    return slug.strip("-")


def _truncate(text: Optional[str], limit: int, marker: str = "…") -> str:
    """Clip `text` to at most `limit` characters, appending `marker` when clipped."""
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(marker))] + marker


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"
