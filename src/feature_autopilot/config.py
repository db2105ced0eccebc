"""Load optional autopilot configuration from `.autopilot/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .constants import CONFIG_FILE, POLL_INTERVAL_SECONDS, STATE_DIR_NAME
from .escalation import TriggerConfig
from .io_utils import _load_data_with_error
from .models import EscalationConfig
from .retry import RetryConfig
from .utils import _coerce_float


def load_autopilot_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_block(config: dict[str, Any], key: str) -> dict[str, Any]:
    raw = config.get(key)
    return raw if isinstance(raw, dict) else {}


def get_retry_config(config: dict[str, Any]) -> RetryConfig:
    """Build the retry policy from the `retry` block, with defaults for missing keys."""
    return RetryConfig.from_dict(_get_block(config, "retry"))


def get_trigger_config(
    config: dict[str, Any],
    manifest_escalation: Optional[EscalationConfig] = None,
) -> TriggerConfig:
    """Build the live tracker configuration.

    A manifest-level escalation block wins over the project config file.
    """
    if manifest_escalation is not None:
        return TriggerConfig.from_escalation_config(manifest_escalation)
    return TriggerConfig.from_dict(_get_block(config, "escalation"))


def get_poll_interval(config: dict[str, Any]) -> float:
    value = _coerce_float(config.get("poll_interval_seconds"), POLL_INTERVAL_SECONDS)
    return value if value > 0 else POLL_INTERVAL_SECONDS
