"""Parse `Depends:` lines and resolve dependency tokens to feature ids."""

from __future__ import annotations

import re
from typing import Iterable

from .models import Feature
from .utils import _format_root_id

DEPENDS_RE = re.compile(r"^depends:\s*(.+)$", re.IGNORECASE)


def parse_dependencies(raw_content: str, description: str = "") -> list[str]:
    """Collect dependency tokens from every `Depends:` line.

    Args:
        raw_content: Full markdown of the feature section.
        description: Used when `raw_content` is empty.

    Returns:
        Tokens in authoring order, whitespace-trimmed, empties dropped.
    """
    content = raw_content or description or ""
    deps: list[str] = []
    for line in content.splitlines():
        match = DEPENDS_RE.match(line.strip())
        if not match:
            continue
        for token in match.group(1).split(","):
            token = token.strip()
            if token:
                deps.append(token)
    return deps


def resolve_dependency_token(token: str, features: Iterable[Feature]) -> str:
    """Resolve a bare ordinal or a feature title to a canonical feature id.

    A bare ordinal such as ``3`` becomes ``03`` when that id exists, else the
    literal token when it exists as an id. Otherwise the token is compared to
    feature titles case-insensitively. Unresolved tokens are returned unchanged
    so they can be pruned (and reported) later.
    """
    token = token.strip()
    features = list(features)
    ids = {feature.id for feature in features}

    if token.isdecimal():
        padded = _format_root_id(int(token))
        if padded in ids:
            return padded
        if token in ids:
            return token

    normalized = token.lower()
    for feature in features:
        if feature.title.strip().lower() == normalized:
            return feature.id
    return token
