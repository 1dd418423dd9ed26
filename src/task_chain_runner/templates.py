"""Text templates for human-readable summaries.

Projects can override any built-in template by dropping
``.task_chain/templates/<template_id>.md`` next to their task store.
Templates use ``$name`` placeholders; unknown placeholders are left as-is.
"""

from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Optional

from .constants import TEMPLATES_DIR

BUILTIN_TEMPLATES: dict[str, str] = {
    "insertion_summary": (
        "Inserted task '$task_name' ($task_id) using $strategy placement.\n"
        "Dependencies: $dependencies\n"
        "Rewired tasks: $adjusted_count\n"
        "Warnings: $warning_count"
    ),
    "insertion_rejected": (
        "Insertion of '$task_name' was rolled back: $reason"
    ),
    "chain_summary": (
        "Chain '$chain_name' ($chain_id) finished with status $status: "
        "$completed_steps/$total_steps steps completed, $error_count errors, $warning_count warnings."
    ),
    "context_adjustment_summary": (
        "Reviewed $discovery_count discoveries from execution $execution_id: "
        "$suggestion_count suggestions, $applied_count applied automatically."
    ),
}


class TemplateLoader:
    """Resolve template text by id, preferring project overrides."""

    def __init__(self, state_dir: Optional[Path] = None) -> None:
        self._dir = state_dir / TEMPLATES_DIR if state_dir else None
        self._cache: dict[str, str] = {}

    def load(self, template_id: str) -> str:
        if template_id in self._cache:
            return self._cache[template_id]
        text: Optional[str] = None
        if self._dir is not None:
            path = self._dir / f"{template_id}.md"
            if path.exists():
                text = path.read_text(encoding="utf-8")
        if text is None:
            if template_id not in BUILTIN_TEMPLATES:
                available = ", ".join(sorted(BUILTIN_TEMPLATES))
                raise KeyError(f"Unknown template '{template_id}' (built-in: {available})")
            text = BUILTIN_TEMPLATES[template_id]
        self._cache[template_id] = text
        return text

    def render(self, template_id: str, **values: Any) -> str:
        return Template(self.load(template_id)).safe_substitute(
            {k: _stringify(v) for k, v in values.items()}
        )


def _stringify(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value) if value else "none"
    if value is None:
        return "none"
    return str(value)
