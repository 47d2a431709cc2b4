from __future__ import annotations

from pathlib import Path

import pytest

from devpipe.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DEVPIPE_MAX_ITERATIONS",
        "DEVPIPE_STATE_STORE_ROOT",
        "DEVPIPE_WORKSPACE_ROOT",
        "DEVPIPE_MODEL_REASONING",
        "DEVPIPE_MODEL_REVIEW",
        "DEVPIPE_APPROVAL_TIMEOUT_SECONDS",
        "DEVPIPE_ADAPTER_TIMEOUT_SECONDS",
        "DEVPIPE_SUBSCRIBER_QUEUE_SIZE",
        "DEVPIPE_APPROVAL_ACTION_KINDS",
        "DEVPIPE_CRITICAL_ACTION_MARKER",
        "DEVPIPE_RECURSION_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.max_iterations == 10
    assert settings.approval_timeout_seconds is None
    assert settings.adapter_timeout_seconds is None
    assert settings.approval_action_kinds == ("ARCHITECTURE_CHANGE",)
    assert settings == RuntimeSettings()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVPIPE_MAX_ITERATIONS", "3")
    monkeypatch.setenv("DEVPIPE_APPROVAL_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("DEVPIPE_APPROVAL_ACTION_KINDS", " architecture_change , schema_migration ,")
    monkeypatch.setenv("DEVPIPE_CRITICAL_ACTION_MARKER", "blocker")

    settings = RuntimeSettings.from_env()

    assert settings.max_iterations == 3
    assert settings.approval_timeout_seconds == 2.5
    assert settings.approval_action_kinds == ("ARCHITECTURE_CHANGE", "SCHEMA_MIGRATION")
    assert settings.critical_action_marker == "BLOCKER"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("DEVPIPE_MAX_ITERATIONS", "ten", "must be an integer"),
        ("DEVPIPE_MAX_ITERATIONS", "0", "must be >= 1"),
        ("DEVPIPE_ADAPTER_TIMEOUT_SECONDS", "soon", "number of seconds"),
        ("DEVPIPE_APPROVAL_TIMEOUT_SECONDS", "-1", "must be > 0"),
        ("DEVPIPE_MODEL_REASONING", "  ", "must be non-empty"),
    ],
)
def test_invalid_environment_fails_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_empty_timeout_means_unbounded(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVPIPE_ADAPTER_TIMEOUT_SECONDS", "")

    assert RuntimeSettings.from_env().adapter_timeout_seconds is None


def test_state_store_path_resolution(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/repo")) == absolute
    assert RuntimeSettings(workspace_root=str(tmp_path)).workspace_root_path == tmp_path
