from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class StageId(str, Enum):
    COORD_PLAN = "COORD_PLAN"
    RESEARCH_TECH_AND_SKILLS = "RESEARCH_TECH_AND_SKILLS"
    ARCH_BUILD = "ARCH_BUILD"
    QC1_SYNTAX_STYLE = "QC1_SYNTAX_STYLE"
    QC2_COMPLETENESS = "QC2_COMPLETENESS"
    QC2_SECURITY_PERF = "QC2_SECURITY_PERF"
    ARCH_FIX = "ARCH_FIX"
    COORD_POLISH_DELIVER = "COORD_POLISH_DELIVER"
    FINALIZE = "FINALIZE"


class StageState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentId(str, Enum):
    COORDINATOR = "coordinator"
    RESEARCHER = "researcher"
    ARCHITECT = "architect"
    QC = "qc"
    SYSTEM = "system"


class AgentStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    DONE = "done"
    ERROR = "error"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class FixStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"
    WAIVED = "waived"


class Visibility(str, Enum):
    USER = "user"
    EXPERT = "expert"
    INTERNAL = "internal"


TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({TaskStatus.COMPLETED.value, TaskStatus.FAILED.value})

# Allowed forward moves; a task never returns to an earlier status.
TASK_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    TaskStatus.PENDING.value: frozenset(
        {TaskStatus.IN_PROGRESS.value, TaskStatus.COMPLETED.value, TaskStatus.FAILED.value}
    ),
    TaskStatus.IN_PROGRESS.value: frozenset({TaskStatus.COMPLETED.value, TaskStatus.FAILED.value}),
    TaskStatus.COMPLETED.value: frozenset(),
    TaskStatus.FAILED.value: frozenset(),
}

BLOCKING_SEVERITIES: frozenset[str] = frozenset({Severity.CRITICAL.value, Severity.HIGH.value})


def can_transition_task(current: str, target: str) -> bool:
    return current == target or target in TASK_STATUS_TRANSITIONS.get(current, frozenset())


class PlanTask(BaseModel):
    """One unit of planned work inside ``plan.tasks``."""

    id: str
    description: str
    assigned_to: AgentId
    status: TaskStatus = TaskStatus.PENDING
    task_type: str = "build"
    source_issue_id: str | None = None


class PatchSet(BaseModel):
    """A proposed file change expressed as a unified diff plus the files it touches."""

    patch_id: str
    description: str
    files_touched: list[str] = Field(default_factory=list)
    unified_diff: str
    task_ids: list[str] = Field(default_factory=list)
    applied: bool | None = None
    error: str | None = None


class QCIssue(BaseModel):
    issue_id: str
    stage: StageId
    category: str
    severity: Severity
    file: str = ""
    line_range: tuple[int, int] | None = None
    title: str
    description: str
    recommendation: str = ""
    fix_status: FixStatus = FixStatus.OPEN


class EventLogEntry(BaseModel):
    """A single entry in the append-only ``events`` channel."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    timestamp: str = Field(default_factory=utc_now)
    type: str
    stage: StageId
    agent: AgentId
    summary: str
    details: dict[str, Any] | None = None
    visibility: Visibility = Visibility.USER


class ActiveAgentState(BaseModel):
    agent_id: AgentId
    status: AgentStatus
    current_task: str | None = None
    started_at: str | None = None
    updated_at: str = Field(default_factory=utc_now)


# -- Research reports --


class PinnedDependency(BaseModel):
    name: str
    version: str
    reason: str = ""


class TechRealityReport(BaseModel):
    """Technology reality check: what the requested stack actually looks like today."""

    stack_summary: str
    recommended_pins: list[PinnedDependency] = Field(default_factory=list)
    compatibility_warnings: list[str] = Field(default_factory=list)
    security_advisories: list[str] = Field(default_factory=list)


class Skill(BaseModel):
    name: str
    level: str = "intermediate"
    rationale: str = ""


class CompetencyMap(BaseModel):
    skills: list[Skill] = Field(default_factory=list)
    standards_anchors: list[str] = Field(default_factory=list)
    learning_resources: list[str] = Field(default_factory=list)


class CodebaseAnalysis(BaseModel):
    architectural_notes: list[str] = Field(default_factory=list)
    bottlenecks: list[str] = Field(default_factory=list)
    suggested_patterns: list[str] = Field(default_factory=list)


# -- Structured LLM outputs --


class PlannedTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    description: str
    assigned_to: AgentId = AgentId.ARCHITECT


class CoordinatorPlan(BaseModel):
    """Structured output of the coordinator planning prompt."""

    model_config = ConfigDict(extra="ignore")

    intent: str
    needs_research: bool = False
    research_query: str | None = None
    tasks: list[PlannedTask] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class PatchDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patch_id: str
    description: str
    files_touched: list[str] = Field(default_factory=list)
    unified_diff: str
    task_ids: list[str] = Field(default_factory=list)


class ArchitectPatchPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    patches: list[PatchDraft] = Field(default_factory=list)
    summary: str = ""


class QCIssueDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str
    severity: Severity
    file: str = ""
    title: str
    description: str
    recommendation: str = ""


class QCReview(BaseModel):
    model_config = ConfigDict(extra="ignore")

    issues: list[QCIssueDraft] = Field(default_factory=list)
    summary: str = ""
