from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping

import pytest
from pydantic import BaseModel

from mas_orchestrator import prompts
from mas_orchestrator.checkpoint import KeyValueCheckpointSaver
from mas_orchestrator.kv import InMemoryKeyValueStore
from mas_orchestrator.pipeline import build_pipeline
from mas_orchestrator.ports import PatchResult
from mas_orchestrator.resilience import CircuitBreaker, RetryPolicy
from mas_orchestrator.service import OrchestratorService
from mas_orchestrator.settings import RuntimeSettings

DEFAULT_RESPONSES: dict[str, Any] = {
    prompts.COORDINATOR_PLAN: {
        "intent": "build",
        "needs_research": False,
        "tasks": [{"id": "t1", "description": "Build it", "assigned_to": "architect"}],
        "acceptance_criteria": ["It works"],
    },
    prompts.RESEARCH_TECH_REALITY: {"stack_summary": "node 20"},
    prompts.RESEARCH_COMPETENCY_MAP: {},
    prompts.RESEARCH_CODEBASE_ANALYSIS: {},
    prompts.ARCHITECT_PATCHES: {"patches": []},
    prompts.QC_REVIEW: {},
}


async def no_sleep(_: float) -> None:
    return None


class FakeLLM:
    """Scripted ``LLMProvider``.

    A response may be a payload dict, an exception to raise, a callable of the
    request payload, or a list consumed one item per call (the last item repeats).
    """

    def __init__(self, responses: Mapping[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = {**DEFAULT_RESPONSES, **(responses or {})}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.hang: set[str] = set()

    async def invoke(self, prompt_type: str, payload: Mapping[str, Any], schema: type[BaseModel]) -> Any:
        self.calls.append((prompt_type, dict(payload)))
        if prompt_type in self.hang:
            await asyncio.Event().wait()
        response = self.responses[prompt_type]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if callable(response):
            response = response(payload)
        if isinstance(response, BaseException):
            raise response
        return schema.model_validate(response)

    def prompt_types(self) -> list[str]:
        return [prompt_type for prompt_type, _ in self.calls]

    def count(self, prompt_type: str) -> int:
        return self.prompt_types().count(prompt_type)


class FakePatchApplier:
    """In-memory ``PatchApplier``; paths in ``fail_paths`` reject every patch."""

    def __init__(self, fail_paths: set[str] | None = None) -> None:
        self.files: dict[str, str] = {}
        self.fail_paths = set(fail_paths or ())
        self.applied: list[str] = []

    async def apply(self, path: str, unified_diff: str) -> PatchResult:
        if path in self.fail_paths:
            return PatchResult(path=path, success=False, error="hunk 1 does not apply")
        self.files[path] = unified_diff
        self.applied.append(path)
        return PatchResult(path=path, success=True)

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]


def patch(patch_id: str, path: str, *task_ids: str) -> dict[str, Any]:
    return {
        "patch_id": patch_id,
        "description": f"Change {path}",
        "files_touched": [path],
        "unified_diff": f"--- /dev/null\n+++ b/{path}\n@@ -0,0 +1 @@\n+// {patch_id}\n",
        "task_ids": list(task_ids),
    }


ServiceFactory = Callable[..., OrchestratorService]


@pytest.fixture
def make_service() -> ServiceFactory:
    def factory(
        llm: FakeLLM,
        patches: FakePatchApplier | None = None,
        *,
        settings: RuntimeSettings | None = None,
        context: Any = None,
    ) -> OrchestratorService:
        settings = settings or RuntimeSettings(llm_max_retries=1)
        checkpointer = KeyValueCheckpointSaver(InMemoryKeyValueStore())
        graph = build_pipeline(
            llm=llm,
            patches=patches or FakePatchApplier(),
            checkpointer=checkpointer,
            context=context,
            settings=settings,
            retry_policy=RetryPolicy(max_retries=settings.llm_max_retries, base_delay=0.0, sleep=no_sleep),
            breaker=CircuitBreaker(failure_threshold=settings.circuit_failure_threshold),
        )
        return OrchestratorService(settings=settings, graph=graph, checkpointer=checkpointer)

    return factory
