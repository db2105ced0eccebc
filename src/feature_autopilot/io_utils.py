from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

from .utils import _now_iso


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as handle:
        json.dump(data, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as handle:
        yaml.safe_dump(
            data,
            handle,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _is_yaml_path(path: Path) -> bool:
    return path.suffix in {".yaml", ".yml"}


def _save_data(path: Path, data: dict[str, Any]) -> None:
    if _is_yaml_path(path):
        _atomic_write_yaml(path, data)
    else:
        _atomic_write_json(path, data)


def _read_data(path: Path) -> Any:
    with open(path, "r") as handle:
        if _is_yaml_path(path):
            return yaml.safe_load(handle)
        return json.load(handle)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse and IO failures are reported so callers can avoid overwriting
    corrupted durable state files.
    """
    if not path.exists():
        return default, None
    try:
        data = _read_data(path)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("timestamp", _now_iso())
    line = json.dumps(payload, default=str) + "\n"
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())
