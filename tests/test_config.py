from __future__ import annotations

from pathlib import Path

import yaml

from task_chain_runner.chains.manager import ChainManager
from task_chain_runner.config import (
    get_chain_config,
    get_knowledge_min_confidence,
    get_log_level,
    load_runner_config,
)
from task_chain_runner.constants import DEFAULT_ERROR_STRATEGY, DEFAULT_MAX_RETRIES, DEFAULT_STEP_TIMEOUT_SECONDS
from task_chain_runner.context import ProjectContext
from task_chain_runner.schemas import ChainDefinition


def _write_config(project_dir: Path, data: dict) -> None:
    state = project_dir / ".task_chain"
    state.mkdir(parents=True, exist_ok=True)
    (state / "config.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")


def test_missing_config_is_empty(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_unreadable_config_reports_error(tmp_path: Path) -> None:
    state = tmp_path / ".task_chain"
    state.mkdir()
    (state / "config.yaml").write_text("chains: [unclosed", encoding="utf-8")
    config, err = load_runner_config(tmp_path)
    assert config == {}
    assert err

    ctx = ProjectContext.for_project(tmp_path)
    assert ctx.config == {}
    assert ctx.config_error == err


def test_chain_defaults() -> None:
    cfg = get_chain_config({})
    assert cfg["max_retries"] == DEFAULT_MAX_RETRIES
    assert cfg["error_strategy"] == DEFAULT_ERROR_STRATEGY
    assert cfg["step_timeout_seconds"] == DEFAULT_STEP_TIMEOUT_SECONDS
    assert cfg["enable_parallel"] is False


def test_chain_invalid_values_fall_back() -> None:
    cfg = get_chain_config(
        {
            "chains": {
                "max_retries": -1,
                "error_strategy": "pray",
                "step_timeout_seconds": 0,
                "total_timeout_seconds": True,
                "enable_parallel": "yes",
            }
        }
    )
    assert cfg == get_chain_config({})


def test_chain_values_read() -> None:
    cfg = get_chain_config({"chains": {"max_retries": 0, "error_strategy": "skip_on_error", "enable_parallel": True}})
    assert cfg["max_retries"] == 0
    assert cfg["error_strategy"] == "skip_on_error"
    assert cfg["enable_parallel"] is True


def test_knowledge_threshold_and_log_level() -> None:
    assert get_knowledge_min_confidence({"knowledge": {"min_confidence": 0.7}}) == 0.7
    assert get_knowledge_min_confidence({"knowledge": {"min_confidence": 2}}) == 0.5
    assert get_log_level({"logging": {"level": "debug"}}) == "DEBUG"
    assert get_log_level({"logging": {"level": "chatty"}}) == "INFO"


def test_project_context_paths(tmp_path: Path) -> None:
    ctx = ProjectContext.for_project(tmp_path)
    assert ctx.state_dir == tmp_path.resolve() / ".task_chain"
    assert ctx.memory_dir == ctx.state_dir / "memory"

    custom = ProjectContext.for_project(tmp_path, state_dir=tmp_path / "elsewhere")
    assert custom.memory_dir == tmp_path / "elsewhere" / "memory"


def test_config_layers_into_chain_runs(tmp_path: Path) -> None:
    _write_config(tmp_path, {"chains": {"error_strategy": "fail_fast", "max_retries": 1}})
    manager = ChainManager(ProjectContext.for_project(tmp_path))
    definition = ChainDefinition.model_validate(
        {"name": "layered", "steps": [{"name": "s", "prompt": "p"}], "config": {"max_retries": 4}}
    )

    run = manager.build_run(definition)
    assert run.config.error_strategy.value == "fail_fast"
    assert run.config.max_retries == 4

    run = manager.build_run(definition, config={"error_strategy": "continue_on_error"})
    assert run.config.error_strategy.value == "continue_on_error"
