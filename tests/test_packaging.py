"""Test packaging metadata and installation extras."""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _load_pyproject() -> dict[str, Any]:
    pyproject_path = PROJECT_ROOT / "pyproject.toml"
    raw = pyproject_path.read_text(encoding="utf-8")
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(raw)

    import tomli

    return tomli.loads(raw)


def _names(requirements: list[str]) -> set[str]:
    return {re.split(r"[<>=;\[ ]", str(item).strip(), maxsplit=1)[0].lower() for item in requirements}


def test_pyproject_declares_test_extras() -> None:
    """Ensure `pyproject.toml` declares pytest under `[project.optional-dependencies].test`."""
    data = _load_pyproject()
    test_deps = data.get("project", {}).get("optional-dependencies", {}).get("test", [])
    normalized = {str(item).strip().lower() for item in test_deps}
    assert any(item.startswith("pytest") for item in normalized)


def test_runtime_dependencies_cover_imports() -> None:
    data = _load_pyproject()
    declared = _names(data["project"]["dependencies"])
    assert {"filelock", "loguru", "pydantic", "pyyaml", "rich"} <= declared


def test_cli_entry_point() -> None:
    data = _load_pyproject()
    assert data["project"]["scripts"]["task-chain"] == "task_chain_runner.cli:main"
