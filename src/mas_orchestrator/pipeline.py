"""Wiring of the coordinator/researcher/architect/QC agents into a stage graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from langgraph.checkpoint.base import BaseCheckpointSaver

from .agents import ArchitectAgent, CoordinatorAgent, QCAgent, ResearcherAgent, finalize, fix_fallback
from .graph import END, ConditionalRoute, ExecutableGraph, StageGraphDefinition, StageSpec, compile_stage_graph
from .models import BLOCKING_SEVERITIES, StageId
from .ports import ContextProvider, LLMProvider, PatchApplier
from .resilience import CircuitBreaker, RetryPolicy
from .settings import RuntimeSettings
from .state import RunState

logger = logging.getLogger(__name__)

COORDINATOR = "coordinator"
RESEARCHER = "researcher"
ARCHITECT = "architect"
QC1 = "qc1"
QC2 = "qc2"
FIX = "fix"
FINALIZE = "finalize"


def route_after_coordinator(state: Mapping[str, Any]) -> str:
    stage = state.get("status", {}).get("stage")
    return RESEARCHER if stage == StageId.RESEARCH_TECH_AND_SKILLS.value else ARCHITECT


def route_after_qc2(state: Mapping[str, Any]) -> str:
    """Loop into the fix stage while blocking issues remain and iterations are left."""
    qc = state.get("qc", {})
    counts = qc.get("severity_counts", {})
    blocking = any(int(counts.get(severity, 0)) > 0 for severity in BLOCKING_SEVERITIES)
    if blocking and int(qc.get("iteration", 0)) < int(qc.get("max_iterations", 3)):
        return FIX
    return FINALIZE


@dataclass
class PipelineAgents:
    coordinator: CoordinatorAgent
    researcher: ResearcherAgent
    architect: ArchitectAgent
    qc: QCAgent

    @classmethod
    def build(
        cls,
        *,
        llm: LLMProvider,
        patches: PatchApplier,
        context: ContextProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> PipelineAgents:
        """Create the four agents sharing one retry policy and one circuit breaker."""
        shared: dict[str, Any] = {
            "llm": llm,
            "retry_policy": retry_policy or RetryPolicy(),
            "breaker": breaker or CircuitBreaker(),
        }
        return cls(
            coordinator=CoordinatorAgent(**shared),
            researcher=ResearcherAgent(context=context, **shared),
            architect=ArchitectAgent(patches=patches, **shared),
            qc=QCAgent(patches=patches, **shared),
        )


def build_pipeline_definition(agents: PipelineAgents) -> StageGraphDefinition:
    return StageGraphDefinition(
        state_schema=RunState,
        entry=COORDINATOR,
        stages=[
            StageSpec(COORDINATOR, StageId.COORD_PLAN.value, agents.coordinator),
            StageSpec(RESEARCHER, StageId.RESEARCH_TECH_AND_SKILLS.value, agents.researcher),
            StageSpec(ARCHITECT, StageId.ARCH_BUILD.value, agents.architect),
            StageSpec(QC1, StageId.QC1_SYNTAX_STYLE.value, agents.qc.syntax_style),
            StageSpec(QC2, StageId.QC2_COMPLETENESS.value, agents.qc.completeness),
            StageSpec(FIX, StageId.ARCH_FIX.value, agents.architect.fix, fix_fallback),
            StageSpec(FINALIZE, StageId.FINALIZE.value, finalize),
        ],
        edges=[
            (RESEARCHER, ARCHITECT),
            (ARCHITECT, QC1),
            (QC1, QC2),
            (FIX, QC1),
            (FINALIZE, END),
        ],
        routes=[
            ConditionalRoute(
                COORDINATOR,
                route_after_coordinator,
                {RESEARCHER: RESEARCHER, ARCHITECT: ARCHITECT},
            ),
            ConditionalRoute(QC2, route_after_qc2, {FIX: FIX, FINALIZE: FINALIZE}),
        ],
    )


def build_pipeline(
    *,
    llm: LLMProvider,
    patches: PatchApplier,
    checkpointer: BaseCheckpointSaver,
    context: ContextProvider | None = None,
    settings: RuntimeSettings | None = None,
    retry_policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
) -> ExecutableGraph:
    """Compile the full agent pipeline.

    Retry and breaker parameters come from ``settings`` unless explicit
    instances are passed (tests inject instant sleeps and fake clocks).
    """
    settings = (settings or RuntimeSettings()).normalized()
    agents = PipelineAgents.build(
        llm=llm,
        patches=patches,
        context=context,
        retry_policy=retry_policy
        or RetryPolicy(max_retries=settings.llm_max_retries, base_delay=settings.retry_base_delay_seconds),
        breaker=breaker
        or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=float(settings.circuit_reset_seconds),
        ),
    )
    graph = compile_stage_graph(
        build_pipeline_definition(agents),
        checkpointer=checkpointer,
        recursion_limit=settings.recursion_limit,
    )
    logger.info("Built %s pipeline", settings.run_mode)
    return graph

