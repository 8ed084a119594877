"""RunState channels and their merge functions.

Every channel of ``RunState`` declares its merge function with ``Annotated``.
The executor folds each stage's partial update into the accumulated state
with these functions, so the table below is the whole contract:

=====================================  ===========================  =====================================
channel                                merge                        law
=====================================  ===========================  =====================================
events, errors, warnings               ``concat``                   associative, identity ``[]``
status                                 ``shallow_override``         associative, right-biased
plan, research, artifacts, qc          ``override_with_defaults``   right-biased, defaults fill empty state
run_id, inputs, mode, ... (scalars)    ``keep_latest``              associative, ``None`` is identity
=====================================  ===========================  =====================================

For ``override_with_defaults`` the fold law holds: merging ``u1`` then ``u2``
into a state equals merging ``shallow_override(u1, u2)`` once.
"""

from __future__ import annotations

import uuid
from collections import Counter
from typing import Annotated, Any, Callable, Iterable, Mapping, TypedDict

from .models import (
    AgentId,
    AgentStatus,
    EventLogEntry,
    FixStatus,
    Severity,
    StageId,
    StageState,
    Visibility,
    utc_now,
)

Merge = Callable[[Any, Any], Any]


def concat(left: list[Any] | None, right: list[Any] | None) -> list[Any]:
    """Append-only merge: the accumulated prefix is never rewritten."""
    return [*(left or []), *(right or [])]


def shallow_override(left: Mapping[str, Any] | None, right: Mapping[str, Any] | None) -> dict[str, Any]:
    return {**(left or {}), **(right or {})}


def keep_latest(left: Any, right: Any) -> Any:
    return right if right is not None else left


def override_with_defaults(name: str, defaults: Callable[[], dict[str, Any]]) -> Merge:
    """Build a shallow-override merge whose missing fields fall back to ``defaults()``."""

    def merge(left: Mapping[str, Any] | None, right: Mapping[str, Any] | None) -> dict[str, Any]:
        return {**defaults(), **(left or {}), **(right or {})}

    merge.__name__ = f"merge_{name}"
    merge.__qualname__ = merge.__name__
    return merge


def default_plan() -> dict[str, Any]:
    return {"tasks": [], "acceptance_criteria": [], "constraints": []}


def default_research() -> dict[str, Any]:
    return {
        "research_query": None,
        "tech_reality": None,
        "competency_map": None,
        "codebase_analysis": None,
        "last_updated": None,
    }


def default_artifacts() -> dict[str, Any]:
    return {"current_files": {}, "patches": []}


def empty_severity_counts() -> dict[str, int]:
    return {severity.value: 0 for severity in Severity}


def default_qc() -> dict[str, Any]:
    return {
        "issues": [],
        "severity_counts": empty_severity_counts(),
        "pass": False,
        "iteration": 0,
        "max_iterations": 3,
    }


merge_plan = override_with_defaults("plan", default_plan)
merge_research = override_with_defaults("research", default_research)
merge_artifacts = override_with_defaults("artifacts", default_artifacts)
merge_qc = override_with_defaults("qc", default_qc)


class RunState(TypedDict, total=False):
    run_id: Annotated[str, keep_latest]
    conversation_id: Annotated[str, keep_latest]
    user_id: Annotated[str, keep_latest]
    created_at: Annotated[str, keep_latest]
    mode: Annotated[str, keep_latest]
    inputs: Annotated[dict[str, Any], keep_latest]
    agent_models: Annotated[dict[str, Any], keep_latest]
    status: Annotated[dict[str, Any], shallow_override]
    plan: Annotated[dict[str, Any], merge_plan]
    research: Annotated[dict[str, Any], merge_research]
    artifacts: Annotated[dict[str, Any], merge_artifacts]
    qc: Annotated[dict[str, Any], merge_qc]
    events: Annotated[list[dict[str, Any]], concat]
    errors: Annotated[list[str], concat]
    warnings: Annotated[list[str], concat]
    cost: Annotated[dict[str, Any], keep_latest]
    error: Annotated[dict[str, Any] | None, keep_latest]
    response: Annotated[str | None, keep_latest]


def make_event(
    state: Mapping[str, Any],
    *,
    type: str,
    agent: AgentId | str,
    summary: str,
    stage: StageId | str | None = None,
    details: Mapping[str, Any] | None = None,
    visibility: Visibility | str = Visibility.USER,
) -> dict[str, Any]:
    """Build a JSON-native ``EventLogEntry`` for the run carried by ``state``."""
    current_stage = stage if stage is not None else state.get("status", {}).get("stage", StageId.COORD_PLAN)
    entry = EventLogEntry(
        run_id=str(state.get("run_id", "")),
        type=type,
        stage=StageId(current_stage),
        agent=AgentId(agent),
        summary=summary,
        details=dict(details) if details is not None else None,
        visibility=Visibility(visibility),
    )
    return entry.model_dump(mode="json", exclude_none=True)


def set_agent_status(
    state: Mapping[str, Any],
    agent: AgentId | str,
    status: AgentStatus | str,
    current_task: str | None = None,
) -> list[dict[str, Any]]:
    """Return ``status.active_agents`` with ``agent`` upserted to ``status``."""
    agent_id = AgentId(agent).value
    now = utc_now()
    agents = [dict(item) for item in state.get("status", {}).get("active_agents", [])]
    for item in agents:
        if item.get("agent_id") == agent_id:
            item["status"] = AgentStatus(status).value
            item["current_task"] = current_task
            item["updated_at"] = now
            return agents
    agents.append(
        {
            "agent_id": agent_id,
            "status": AgentStatus(status).value,
            "current_task": current_task,
            "started_at": now,
            "updated_at": now,
        }
    )
    return agents


def severity_counts(issues: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    """Count open issues per severity; fixed and waived issues do not count."""
    counts = empty_severity_counts()
    tally = Counter(
        str(issue.get("severity"))
        for issue in issues
        if issue.get("fix_status", FixStatus.OPEN.value) == FixStatus.OPEN.value
    )
    for severity, count in tally.items():
        if severity in counts:
            counts[severity] = count
    return counts


def new_run_state(
    *,
    request_text: str,
    conversation_id: str,
    constraints: Mapping[str, Any] | None = None,
    user_id: str = "user",
    mode: str = "3agent_strict",
    max_iterations: int = 3,
    agent_models: Mapping[str, Any] | None = None,
    run_id: str | None = None,
) -> RunState:
    """Create the complete initial state for one build request.

    Every per-run channel is fully populated so that a new run on a thread
    with earlier checkpoints replaces, rather than inherits, the previous
    run's plan, research, artifacts and QC results.
    """
    merged_constraints = {"language": "typescript", "security_level": "normal", "test_level": "standard"}
    merged_constraints.update(constraints or {})
    now = utc_now()
    state: RunState = {
        "run_id": run_id or str(uuid.uuid4()),
        "conversation_id": conversation_id,
        "user_id": user_id,
        "created_at": now,
        "mode": mode,
        "inputs": {"request_text": request_text, "constraints": merged_constraints},
        "agent_models": dict(agent_models or {}),
        "status": {
            "stage": StageId.COORD_PLAN.value,
            "stage_state": StageState.RUNNING.value,
            "progress": {"percent": 0, "label": "Starting...", "iteration": {"current": 0, "max": max_iterations}},
            "active_agents": [],
        },
        "plan": default_plan(),
        "research": {**default_research(), "last_updated": now},
        "artifacts": default_artifacts(),
        "qc": {**default_qc(), "max_iterations": max_iterations},
        "errors": [],
        "warnings": [],
        "cost": {"total_tokens": 0, "estimated_cost": 0.0},
        "error": {},
        "response": "",
    }
    state["events"] = [
        make_event(
            state,
            type="run_started",
            agent=AgentId.SYSTEM,
            summary="Run started",
            details={"mode": mode, "conversation_id": conversation_id},
        )
    ]
    return state
