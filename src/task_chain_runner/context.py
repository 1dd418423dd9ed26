"""Explicit project context threaded through every store and engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import load_runner_config
from .constants import MEMORY_DIR, STATE_DIR_NAME


@dataclass
class ProjectContext:
    """Where a project's durable state lives and how it is configured.

    Instances are cheap and independent: two contexts pointing at different
    directories never share mutable state.
    """

    project_dir: Path
    state_dir: Path
    config: dict[str, Any] = field(default_factory=dict)
    config_error: Optional[str] = None

    @classmethod
    def for_project(cls, project_dir: Path, state_dir: Optional[Path] = None) -> "ProjectContext":
        project_dir = Path(project_dir).expanduser().resolve()
        config, err = load_runner_config(project_dir)
        if err:
            logger.warning("Ignoring unreadable config: {}", err)
        return cls(
            project_dir=project_dir,
            state_dir=state_dir or project_dir / STATE_DIR_NAME,
            config=config,
            config_error=err,
        )

    @property
    def memory_dir(self) -> Path:
        return self.state_dir / MEMORY_DIR
