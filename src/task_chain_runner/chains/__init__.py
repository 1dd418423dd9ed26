"""Chain execution: multi-step runs whose steps are backed by tasks.

Steps move through their state machine inside :class:`ChainExecutor`;
:class:`ChainManager` builds runs from definitions and exposes the
start/status/cancel/retry/submit/resume operations.
"""

from .executor import ChainExecutor
from .manager import ChainManager, resolve_parents

__all__ = ["ChainExecutor", "ChainManager", "resolve_parents"]
