"""Load optional runner configuration from `.task_chain/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_ENABLE_PARALLEL,
    DEFAULT_ERROR_STRATEGY,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_CONFIDENCE,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TOTAL_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error

VALID_ERROR_STRATEGIES = {"fail_fast", "continue_on_error", "retry_on_error", "skip_on_error"}
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_number(raw: Any, default: float) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        return default
    return float(raw)


def get_chain_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract chain execution defaults from the runner config.

    Args:
        config: Runner configuration dictionary.

    Returns:
        A mapping with `max_retries`, `step_timeout_seconds`,
        `total_timeout_seconds`, `error_strategy` and `enable_parallel`, with
        invalid or missing values replaced by the built-in defaults.
    """
    raw = _get_nested(config, "chains")
    raw = raw if isinstance(raw, dict) else {}

    max_retries = raw.get("max_retries")
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        max_retries = DEFAULT_MAX_RETRIES

    strategy = raw.get("error_strategy")
    if strategy not in VALID_ERROR_STRATEGIES:
        strategy = DEFAULT_ERROR_STRATEGY

    parallel = raw.get("enable_parallel")
    if not isinstance(parallel, bool):
        parallel = DEFAULT_ENABLE_PARALLEL

    return {
        "max_retries": max_retries,
        "step_timeout_seconds": _positive_number(raw.get("step_timeout_seconds"), DEFAULT_STEP_TIMEOUT_SECONDS),
        "total_timeout_seconds": _positive_number(raw.get("total_timeout_seconds"), DEFAULT_TOTAL_TIMEOUT_SECONDS),
        "error_strategy": strategy,
        "enable_parallel": parallel,
    }


def get_knowledge_min_confidence(config: dict[str, Any]) -> float:
    raw = _get_nested(config, "knowledge", "min_confidence")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not 0 <= raw <= 1:
        return DEFAULT_MIN_CONFIDENCE
    return float(raw)


def get_log_level(config: dict[str, Any]) -> str:
    """Extract the logging level, falling back to the default for unknown names."""
    raw = _get_nested(config, "logging", "level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return DEFAULT_LOG_LEVEL
