from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_iterations: int = 10
    state_store_root: str = "state_store"
    workspace_root: str = ""
    model_reasoning: str = "gpt-4o"
    model_review: str = "gpt-4o-mini"
    approval_timeout_seconds: float | None = None
    adapter_timeout_seconds: float | None = None
    subscriber_queue_size: int = 256
    approval_action_kinds: tuple[str, ...] = ("ARCHITECTURE_CHANGE",)
    critical_action_marker: str = "CRITICAL"
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_iterations=_get_env_int("DEVPIPE_MAX_ITERATIONS", default=10, minimum=1, maximum=1_000),
            state_store_root=os.getenv("DEVPIPE_STATE_STORE_ROOT", "state_store"),
            workspace_root=os.getenv("DEVPIPE_WORKSPACE_ROOT", ""),
            model_reasoning=os.getenv("DEVPIPE_MODEL_REASONING", "gpt-4o"),
            model_review=os.getenv("DEVPIPE_MODEL_REVIEW", "gpt-4o-mini"),
            approval_timeout_seconds=_get_env_seconds("DEVPIPE_APPROVAL_TIMEOUT_SECONDS"),
            adapter_timeout_seconds=_get_env_seconds("DEVPIPE_ADAPTER_TIMEOUT_SECONDS"),
            subscriber_queue_size=_get_env_int("DEVPIPE_SUBSCRIBER_QUEUE_SIZE", default=256, minimum=1),
            approval_action_kinds=_get_env_csv("DEVPIPE_APPROVAL_ACTION_KINDS", ("ARCHITECTURE_CHANGE",)),
            critical_action_marker=os.getenv("DEVPIPE_CRITICAL_ACTION_MARKER", "CRITICAL"),
            recursion_limit=_get_env_int("DEVPIPE_RECURSION_LIMIT", default=1_000, minimum=100),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        model_reasoning = self.model_reasoning.strip()
        if not model_reasoning:
            raise ValueError("DEVPIPE_MODEL_REASONING must be non-empty")
        model_review = self.model_review.strip()
        if not model_review:
            raise ValueError("DEVPIPE_MODEL_REVIEW must be non-empty")

        # -- Numeric bounds validation --
        if self.max_iterations < 1:
            raise ValueError(f"DEVPIPE_MAX_ITERATIONS must be >= 1, got: {self.max_iterations}")
        if self.subscriber_queue_size < 1:
            raise ValueError(
                f"DEVPIPE_SUBSCRIBER_QUEUE_SIZE must be >= 1, got: {self.subscriber_queue_size}"
            )
        if self.recursion_limit > 100_000:
            raise ValueError(
                f"DEVPIPE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}"
            )
        for name, value in (
            ("DEVPIPE_APPROVAL_TIMEOUT_SECONDS", self.approval_timeout_seconds),
            ("DEVPIPE_ADAPTER_TIMEOUT_SECONDS", self.adapter_timeout_seconds),
        ):
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be > 0 when set, got: {value}")

        # -- String field validation --
        if not self.state_store_root.strip():
            raise ValueError("DEVPIPE_STATE_STORE_ROOT must be non-empty")
        critical_action_marker = self.critical_action_marker.strip().upper()
        if not critical_action_marker:
            raise ValueError("DEVPIPE_CRITICAL_ACTION_MARKER must be non-empty")
        approval_action_kinds = tuple(kind.strip().upper() for kind in self.approval_action_kinds if kind.strip())
        return RuntimeSettings(
            max_iterations=self.max_iterations,
            state_store_root=self.state_store_root,
            workspace_root=self.workspace_root,
            model_reasoning=model_reasoning,
            model_review=model_review,
            approval_timeout_seconds=self.approval_timeout_seconds,
            adapter_timeout_seconds=self.adapter_timeout_seconds,
            subscriber_queue_size=self.subscriber_queue_size,
            approval_action_kinds=approval_action_kinds,
            critical_action_marker=critical_action_marker,
            recursion_limit=self.recursion_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_seconds(name: str) -> float | None:
    """Parse an optional positive duration in seconds; unset or empty means unbounded."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got: {raw!r}") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be > 0, got: {parsed}")
    return parsed


def _get_env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())
