from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class GraphDefinitionError(OrchestratorError, ValueError):
    """Raised when a stage-graph definition cannot be compiled."""


class RoutingError(OrchestratorError):
    """Raised when a routing predicate returns an outcome outside its declared set."""


class CircuitOpenError(OrchestratorError):
    """Raised when a circuit is open and the caller supplied no fallback."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"Circuit '{name}' is open; retry after {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class PatchApplicationError(OrchestratorError):
    """Raised when a unified diff cannot be applied to its target file."""


class RunTimeoutError(OrchestratorError):
    """Raised when a run exceeds its wall-clock budget."""

    def __init__(self, run_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Run {run_id} timed out after {timeout_seconds:g}s")
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds
