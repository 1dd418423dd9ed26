"""Provide the public `task_chain_runner` package exports."""

from __future__ import annotations

from .chains import ChainManager
from .context import ProjectContext
from .memory.store import ExecutionMemoryStore
from .task_engine.adjuster import DynamicTaskAdjuster
from .task_engine.engine import TaskEngine

__all__ = [
    "ChainManager",
    "DynamicTaskAdjuster",
    "ExecutionMemoryStore",
    "ProjectContext",
    "TaskEngine",
]
