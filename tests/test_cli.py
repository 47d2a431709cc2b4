from __future__ import annotations

from pathlib import Path

import pytest

from devpipe.__main__ import build_settings, build_tools, load_requirements, main, parse_args
from devpipe.models import Stage, StageStatus
from devpipe.state_store import FileStateStore


def test_load_requirements_from_text_or_file(tmp_path: Path) -> None:
    assert load_requirements(requirements_file=None, requirements_text="  Build a todo API \n") == "Build a todo API"

    path = tmp_path / "requirements.md"
    path.write_text("\nBuild a todo API\n", encoding="utf-8")
    assert load_requirements(requirements_file=path, requirements_text=None) == "Build a todo API"


def test_load_requirements_rejects_bad_input(tmp_path: Path) -> None:
    path = tmp_path / "requirements.md"
    path.write_text("   \n", encoding="utf-8")

    with pytest.raises(ValueError, match="cannot be combined"):
        load_requirements(requirements_file=path, requirements_text="x")
    with pytest.raises(ValueError, match="must be non-empty"):
        load_requirements(requirements_file=None, requirements_text="   ")
    with pytest.raises(ValueError, match="is required"):
        load_requirements(requirements_file=None, requirements_text=None)
    with pytest.raises(ValueError, match="is empty"):
        load_requirements(requirements_file=path, requirements_text=None)
    with pytest.raises(FileNotFoundError):
        load_requirements(requirements_file=tmp_path / "missing.md", requirements_text=None)


def test_parse_args_defaults() -> None:
    args = parse_args(["--requirements-text", "x"])

    assert args.approval_action == "APPROVE"
    assert args.pr_base == "main"
    assert args.max_iterations is None
    assert args.log_level == "INFO"


def test_build_settings_applies_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DEVPIPE_MAX_ITERATIONS", raising=False)
    args = parse_args(
        ["--requirements-text", "x", "--max-iterations", "4", "--workspace-root", str(tmp_path), "--state-store-root", "ledger"]
    )

    settings = build_settings(args)

    assert settings.max_iterations == 4
    assert settings.workspace_root == str(tmp_path.resolve())
    assert settings.state_store_root == "ledger"

    with pytest.raises(ValueError, match="DEVPIPE_MAX_ITERATIONS"):
        build_settings(parse_args(["--requirements-text", "x", "--max-iterations", "0"]))


def test_build_tools_connects_what_is_available(tmp_path: Path) -> None:
    args = parse_args(["--requirements-text", "x", "--workspace-root", str(tmp_path / "ws")])

    registry = build_tools(build_settings(args), "acme/todo")

    assert registry.is_connected("filesystem")
    assert registry.is_connected("github")
    assert not registry.is_connected("git")
    assert (tmp_path / "ws").is_dir()


def test_main_without_requirements_returns_error() -> None:
    assert main([]) == 1


def test_main_fails_triage_when_reasoning_is_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DEVPIPE_STATE_STORE_ROOT", raising=False)

    code = main(["--requirements-text", "Build a todo API", "--workspace-root", str(tmp_path / "ws")])

    assert code == 1
    lines = capsys.readouterr().out.splitlines()
    task_id = next(line.split("=", 1)[1] for line in lines if line.startswith("task_id="))
    entry = FileStateStore(tmp_path / "state_store").read_stage_entry(task_id, Stage.TRIAGE)
    assert entry.status == StageStatus.FAILED
    assert entry.reason == "adapter unavailable"
