from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

CHECKPOINT_BACKENDS: frozenset[str] = frozenset({"memory", "sqlite", "redis"})
RUN_MODES: frozenset[str] = frozenset({"single", "3agent_fast", "3agent_hardened", "3agent_strict"})

DEFAULT_STREAM_EVENT_TYPES: tuple[str, ...] = (
    "run_started",
    "run_completed",
    "stage_started",
    "stage_completed",
    "iteration_started",
    "iteration_completed",
    "agent_status",
    "qc_review",
    "qc_issues_found",
    "qc_passed",
    "patch_applied",
    "artifact_ready",
    "warning",
    "error",
)


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    run_timeout_seconds: int = 300
    max_qc_iterations: int = 3
    llm_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    circuit_failure_threshold: int = 3
    circuit_reset_seconds: int = 60
    recursion_limit: int = 100
    checkpoint_backend: str = "memory"
    checkpoint_db: str = "state_store/checkpoints.sqlite"
    redis_url: str = "redis://localhost:6379/0"
    checkpoint_ttl_seconds: int = 0
    run_mode: str = "3agent_strict"
    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"
    workspace_root: str = ""
    stream_event_types: tuple[str, ...] = DEFAULT_STREAM_EVENT_TYPES

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        raw_types = os.getenv("MAS_STREAM_EVENT_TYPES", "")
        stream_event_types = (
            tuple(item.strip() for item in raw_types.split(",") if item.strip())
            if raw_types.strip()
            else DEFAULT_STREAM_EVENT_TYPES
        )
        return cls(
            run_timeout_seconds=_get_env_int("MAS_RUN_TIMEOUT_SECONDS", default=300, minimum=1, maximum=86_400),
            max_qc_iterations=_get_env_int("MAS_MAX_QC_ITERATIONS", default=3, minimum=0, maximum=20),
            llm_max_retries=_get_env_int("MAS_LLM_MAX_RETRIES", default=3, minimum=1, maximum=10),
            retry_base_delay_seconds=_get_env_float("MAS_RETRY_BASE_DELAY_SECONDS", default=1.0, minimum=0.0),
            circuit_failure_threshold=_get_env_int("MAS_CIRCUIT_FAILURE_THRESHOLD", default=3, minimum=1),
            circuit_reset_seconds=_get_env_int("MAS_CIRCUIT_RESET_SECONDS", default=60, minimum=1),
            recursion_limit=_get_env_int("MAS_RECURSION_LIMIT", default=100, minimum=25),
            checkpoint_backend=os.getenv("MAS_CHECKPOINT_BACKEND", "memory"),
            checkpoint_db=os.getenv("MAS_CHECKPOINT_DB", "state_store/checkpoints.sqlite"),
            redis_url=os.getenv("MAS_REDIS_URL", "redis://localhost:6379/0"),
            checkpoint_ttl_seconds=_get_env_int("MAS_CHECKPOINT_TTL_SECONDS", default=0, minimum=0),
            run_mode=os.getenv("MAS_RUN_MODE", "3agent_strict"),
            model_frontier=os.getenv("MAS_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("MAS_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("MAS_MODEL_ECONOMY", "gpt-4o-mini"),
            workspace_root=os.getenv("MAS_WORKSPACE_ROOT", ""),
            stream_event_types=stream_event_types,
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    @property
    def checkpoint_ttl(self) -> int | None:
        return self.checkpoint_ttl_seconds or None

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        for env_name, value in (
            ("MAS_MODEL_FRONTIER", self.model_frontier),
            ("MAS_MODEL_EFFICIENT", self.model_efficient),
            ("MAS_MODEL_ECONOMY", self.model_economy),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        backend = self.checkpoint_backend.strip().lower()
        if backend not in CHECKPOINT_BACKENDS:
            raise ValueError(
                f"MAS_CHECKPOINT_BACKEND must be one of: {', '.join(sorted(CHECKPOINT_BACKENDS))}"
            )
        if backend == "sqlite" and not self.checkpoint_db.strip():
            raise ValueError("MAS_CHECKPOINT_DB must be non-empty for the sqlite backend")
        if backend == "redis" and not self.redis_url.strip():
            raise ValueError("MAS_REDIS_URL must be non-empty for the redis backend")

        run_mode = self.run_mode.strip().lower()
        if run_mode not in RUN_MODES:
            raise ValueError(f"MAS_RUN_MODE must be one of: {', '.join(sorted(RUN_MODES))}")

        if self.retry_base_delay_seconds > 60:
            raise ValueError(
                f"MAS_RETRY_BASE_DELAY_SECONDS must be <= 60, got: {self.retry_base_delay_seconds}"
            )
        if not self.stream_event_types:
            raise ValueError("MAS_STREAM_EVENT_TYPES must name at least one event type")

        return replace(
            self,
            model_frontier=self.model_frontier.strip(),
            model_efficient=self.model_efficient.strip(),
            model_economy=self.model_economy.strip(),
            checkpoint_backend=backend,
            run_mode=run_mode,
            stream_event_types=tuple(self.stream_event_types),
        )

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

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


def _get_env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed
