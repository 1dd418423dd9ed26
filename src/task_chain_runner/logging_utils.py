"""Configure loguru and summarize chain events."""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT)


def summarize_chain_event(event: Any, max_value_chars: int = 120) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a chain event.

    Args:
        event: A ``ChainEvent`` instance, an event dict, or None.
        max_value_chars: Payload string values longer than this are truncated.

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if event is None:
        return {"event": None}

    data = event.to_dict() if hasattr(event, "to_dict") else dict(event)
    summary: dict[str, Any] = {"event": data.get("event_type")}
    for key in ("chain_id", "step_index", "task_id"):
        if data.get(key) is not None:
            summary[key] = data[key]

    payload = data.get("payload") or {}
    for key, value in payload.items():
        if isinstance(value, str) and len(value) > max_value_chars:
            value = value[: max_value_chars - 3] + "..."
        elif isinstance(value, (dict, list)):
            value = f"<{type(value).__name__}:{len(value)}>"
        summary[key] = value
    return summary


def format_chain_event(event: Any) -> str:
    """One-line human readable form of :func:`summarize_chain_event`."""
    summary = summarize_chain_event(event)
    name = summary.pop("event", None)
    parts = [f"{k}={v}" for k, v in summary.items()]
    return f"{name} " + " ".join(parts) if parts else str(name)
