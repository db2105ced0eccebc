from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from feature_autopilot.constants import FEATURE_FILE, MANIFEST_DIR_NAME, MANIFEST_FILE
from feature_autopilot.manifest import Manifest
from feature_autopilot.models import Feature, FeatureStatus


def make_feature(
    feature_id: str,
    title: Optional[str] = None,
    *,
    status: FeatureStatus = FeatureStatus.PENDING,
    depends_on: Optional[list[str]] = None,
    **kwargs: Any,
) -> Feature:
    return Feature(
        id=feature_id,
        title=title if title is not None else f"Feature {feature_id}",
        dir=f"{feature_id}-feature",
        status=status,
        depends_on=list(depends_on or []),
        **kwargs,
    )


@pytest.fixture
def project(tmp_path: Path):
    """Return a factory that writes PRD/ with a manifest and feature files."""

    def _write(features: list[Feature], *, source: str = "PRD.md", title: str = "Demo") -> Path:
        manifest_dir = tmp_path / MANIFEST_DIR_NAME
        manifest_dir.mkdir(exist_ok=True)
        for feature in features:
            feature_dir = manifest_dir / feature.dir
            feature_dir.mkdir(parents=True, exist_ok=True)
            (feature_dir / FEATURE_FILE).write_text(
                f"# {title}\n\n## {feature.title}\n\n- [ ] first\n- [ ] second\n- [ ] third\n",
                encoding="utf-8",
            )
        if source:
            (tmp_path / source).write_text("# Demo requirements\n", encoding="utf-8")
        manifest = Manifest(source=source, title=title, features=features, path=manifest_dir / MANIFEST_FILE)
        manifest.save()
        return tmp_path

    return _write
