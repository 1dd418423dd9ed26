from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

from .errors import StorageError


def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise StorageError(f"Failed to write {path.name}: {exc}") from exc


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
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
    except (OSError, yaml.YAMLError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise StorageError(f"Failed to write {path.name}: {exc}") from exc


def _load_data_with_error(
    path: Path,
    default: Any,
) -> tuple[Any, str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse/IO failures are reported so callers can avoid overwriting corrupted
    durable state files.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, type(default)):
            return default, f"{path.name}: expected {type(default).__name__}, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _load_data_strict(path: Path, default: Any) -> Any:
    """Load JSON/YAML, raising :class:`StorageError` instead of returning a default on failure."""
    data, err = _load_data_with_error(path, default)
    if err:
        raise StorageError(err)
    return data
