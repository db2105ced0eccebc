"""Provide utility helpers for timestamps, coercion, and naming."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_string_list(value: Any) -> list[str]:
    if isinstance(value, list):
        items = [str(item).strip() for item in value if str(item).strip()]
        return items
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        if value is None:
            return default
        if isinstance(value, bool):
            return int(value)
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


_FEATURE_PREFIX_RE = re.compile(r"^feature\s*\d*:\s*")


def _sanitize_dir_name(title: str) -> str:
    """Turn a feature title into a short, filesystem-safe slug."""
    title = _FEATURE_PREFIX_RE.sub("", title.lower())
    title = re.sub(r"[\s:_-]+", "-", title)
    title = re.sub(r"[^a-z0-9-]", "", title)
    title = re.sub(r"-{2,}", "-", title).strip("-")
    if len(title) > 50:
        title = title[:50].rstrip("-")
    return title


def _format_root_id(ordinal: int) -> str:
    return f"{ordinal:02d}"
