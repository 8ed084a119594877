from __future__ import annotations

import json
from typing import Any, Mapping

COORDINATOR_PLAN = "coordinator_plan"
RESEARCH_TECH_REALITY = "research_tech_reality"
RESEARCH_COMPETENCY_MAP = "research_competency_map"
RESEARCH_CODEBASE_ANALYSIS = "research_codebase_analysis"
ARCHITECT_PATCHES = "architect_patches"
QC_REVIEW = "qc_review"

PROMPT_AGENTS: dict[str, str] = {
    COORDINATOR_PLAN: "coordinator",
    RESEARCH_TECH_REALITY: "researcher",
    RESEARCH_COMPETENCY_MAP: "researcher",
    RESEARCH_CODEBASE_ANALYSIS: "researcher",
    ARCHITECT_PATCHES: "architect",
    QC_REVIEW: "qc",
}

_INSTRUCTIONS: dict[str, str] = {
    COORDINATOR_PLAN: (
        "You are the Coordinator of a three-agent software team.\n"
        "Turn the user's build request into an ordered plan.\n"
        "- Assign implementation tasks to 'architect'; research tasks to 'researcher'.\n"
        "- Set needs_research=true only when the request depends on libraries, APIs or versions "
        "you cannot describe with confidence, and give a focused research_query.\n"
        "- Acceptance criteria must be observable and testable."
    ),
    RESEARCH_TECH_REALITY: (
        "You are the Researcher. Produce a technology reality check for the requested stack: "
        "current stable versions to pin, compatibility warnings and known security advisories."
    ),
    RESEARCH_COMPETENCY_MAP: (
        "You are the Researcher. Map the skills the implementation needs, the standards it should "
        "anchor to and the most useful learning resources."
    ),
    RESEARCH_CODEBASE_ANALYSIS: (
        "You are the Researcher. Analyse the existing codebase context: architectural notes, "
        "likely bottlenecks and patterns the implementation should follow."
    ),
    ARCHITECT_PATCHES: (
        "You are the Architect. Implement the pending tasks as unified diffs.\n"
        "- One patch per coherent change; list every file it touches, target file first.\n"
        "- Reference the task ids each patch implements in task_ids.\n"
        "- Diffs must apply cleanly with standard unified-diff context; new files diff from /dev/null.\n"
        "- When open QC issues are provided, fix them without regressing completed work."
    ),
    QC_REVIEW: (
        "You are Quality Control. Review the applied patches against the acceptance criteria. "
        "Report only concrete issues with a severity of critical, high, medium, low or info, "
        "the affected file and a specific recommendation."
    ),
}


def render_prompt(prompt_type: str, payload: Mapping[str, Any]) -> str:
    """Render the instruction block for ``prompt_type`` followed by the JSON payload.

    Raises:
        KeyError: If ``prompt_type`` is unknown.
    """
    instructions = _INSTRUCTIONS[prompt_type]
    body = json.dumps(payload, indent=2, sort_keys=True, default=str)
    return f"{instructions}\n\n## Input\n```json\n{body}\n```\n"
