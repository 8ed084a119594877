from importlib.metadata import PackageNotFoundError, version

from .checkpoint import KeyValueCheckpointSaver, checkpoint_config
from .errors import (
    CircuitOpenError,
    GraphDefinitionError,
    OrchestratorError,
    PatchApplicationError,
    RoutingError,
    RunTimeoutError,
)
from .graph import ConditionalRoute, ExecutableGraph, StageGraphDefinition, StageSpec, StageUpdate, compile_stage_graph
from .kv import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore, SqliteKeyValueStore, build_key_value_store
from .model_selection import DEFAULT_MODELS_BY_TIER, RuntimeModelSelection
from .models import (
    AgentId,
    AgentStatus,
    EventLogEntry,
    FixStatus,
    PatchSet,
    PlanTask,
    QCIssue,
    Severity,
    StageId,
    StageState,
    TaskStatus,
    Visibility,
)
from .pipeline import build_pipeline, build_pipeline_definition, route_after_coordinator, route_after_qc2
from .resilience import CircuitBreaker, RetryPolicy, safe_stage_execution, with_retry, with_timeout
from .service import OrchestratorService, RunResult
from .settings import RuntimeSettings
from .state import RunState, new_run_state
from .streaming import EventStreamAdapter, ListEventSink, LoggingEventSink, QueueEventSink
from .workspace import WorkspaceContextProvider, WorkspacePatchApplier, apply_unified_diff


def get_version() -> str:
    try:
        return version("mas-orchestrator")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentId",
    "AgentStatus",
    "CircuitBreaker",
    "CircuitOpenError",
    "ConditionalRoute",
    "EventLogEntry",
    "EventStreamAdapter",
    "ExecutableGraph",
    "FixStatus",
    "GraphDefinitionError",
    "InMemoryKeyValueStore",
    "KeyValueCheckpointSaver",
    "KeyValueStore",
    "ListEventSink",
    "LoggingEventSink",
    "OrchestratorError",
    "OrchestratorService",
    "PatchApplicationError",
    "PatchSet",
    "PlanTask",
    "QCIssue",
    "QueueEventSink",
    "RedisKeyValueStore",
    "RetryPolicy",
    "RoutingError",
    "RunResult",
    "RunState",
    "RunTimeoutError",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "Severity",
    "SqliteKeyValueStore",
    "StageGraphDefinition",
    "StageId",
    "StageSpec",
    "StageState",
    "StageUpdate",
    "TaskStatus",
    "Visibility",
    "WorkspaceContextProvider",
    "WorkspacePatchApplier",
    "DEFAULT_MODELS_BY_TIER",
    "apply_unified_diff",
    "build_key_value_store",
    "build_pipeline",
    "build_pipeline_definition",
    "checkpoint_config",
    "compile_stage_graph",
    "new_run_state",
    "route_after_coordinator",
    "route_after_qc2",
    "safe_stage_execution",
    "with_retry",
    "with_timeout",
]
