"""Entry point that runs one build request through the agent pipeline.

One conversation maps to one checkpoint thread. A new request on an existing
conversation starts a fresh run on the same thread; ``resume`` continues the
thread from its last persisted stage.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from langgraph.checkpoint.base import BaseCheckpointSaver

from .checkpoint import KeyValueCheckpointSaver
from .errors import RunTimeoutError
from .graph import ExecutableGraph, thread_config
from .kv import build_key_value_store
from .llm import ChatModelProvider
from .model_selection import RuntimeModelSelection
from .models import AgentId, StageId
from .pipeline import build_pipeline
from .ports import ContextProvider, EventSink, LLMProvider, PatchApplier
from .resilience import sanitize_input, validate_run_state
from .settings import RuntimeSettings
from .state import make_event, new_run_state
from .streaming import EventStreamAdapter
from .workspace import WorkspaceContextProvider, WorkspacePatchApplier

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    run_id: str
    conversation_id: str
    outcome: str
    state: dict[str, Any]
    terminal_event: dict[str, Any] | None = None
    forwarded_events: int = field(default=0, compare=False)

    @property
    def completed(self) -> bool:
        return self.outcome == OUTCOME_COMPLETED

    @property
    def response(self) -> str:
        return str(self.state.get("response") or "")


class OrchestratorService:
    """Runs requests under the whole-run timeout and streams their events."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        graph: ExecutableGraph,
        checkpointer: BaseCheckpointSaver,
        agent_models: Mapping[str, Any] | None = None,
    ) -> None:
        self.settings = settings
        self.graph = graph
        self.checkpointer = checkpointer
        self.agent_models = dict(agent_models or {})

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings | None = None,
        *,
        llm: LLMProvider | None = None,
        patches: PatchApplier | None = None,
        context: ContextProvider | None = None,
        repo_root: Path | None = None,
    ) -> OrchestratorService:
        """Assemble the service from settings, defaulting to ChatOpenAI and the filesystem workspace."""
        settings = (settings or RuntimeSettings.from_env()).normalized()
        checkpointer = KeyValueCheckpointSaver(
            build_key_value_store(settings, repo_root),
            ttl_seconds=settings.checkpoint_ttl,
        )
        selection = RuntimeModelSelection.from_settings(settings)
        workspace = settings.workspace_root_path
        if patches is None:
            patches = WorkspacePatchApplier(workspace)
        if context is None:
            context = WorkspaceContextProvider(workspace)
        graph = build_pipeline(
            llm=llm or ChatModelProvider(selection, repo_root=repo_root),
            patches=patches,
            checkpointer=checkpointer,
            context=context,
            settings=settings,
        )
        return cls(settings=settings, graph=graph, checkpointer=checkpointer, agent_models=selection.describe())

    def _adapter(self, sink: EventSink | None) -> EventStreamAdapter:
        return EventStreamAdapter(sink, event_types=self.settings.stream_event_types)

    async def process_request(
        self,
        request_text: str,
        conversation_id: str,
        constraints: Mapping[str, Any] | None = None,
        *,
        user_id: str = "user",
        sink: EventSink | None = None,
    ) -> RunResult:
        """Run a new build request to completion, timeout or failure.

        Raises:
            ValueError: If the request is empty after sanitizing.
        """
        text = sanitize_input(request_text)
        if not text:
            raise ValueError("request_text must not be empty")
        if not conversation_id.strip():
            raise ValueError("conversation_id must not be empty")
        state = new_run_state(
            request_text=text,
            conversation_id=conversation_id,
            constraints=constraints,
            user_id=user_id,
            mode=self.settings.run_mode,
            max_iterations=self.settings.max_qc_iterations,
            agent_models=self.agent_models,
        )
        problems = validate_run_state(state, self.graph.stage_ids)
        if problems:
            raise ValueError(f"Invalid initial state: {'; '.join(problems)}")
        logger.info("Starting run %s for conversation %s", state["run_id"], conversation_id)
        adapter = self._adapter(sink)
        adapter.forward(state["events"])
        return await self._drive(state, state, conversation_id, adapter)

    async def resume(self, conversation_id: str, *, sink: EventSink | None = None) -> RunResult:
        """Continue a conversation's run from its last persisted checkpoint.

        Raises:
            LookupError: If the conversation has no checkpoint.
        """
        config = thread_config(conversation_id)
        current = await self.graph.get_state(config)
        if not current:
            raise LookupError(f"No checkpoint found for conversation {conversation_id}")
        adapter = self._adapter(sink)
        if not await self.graph.next_stages(config):
            logger.info("Conversation %s has no pending stages", conversation_id)
            return RunResult(
                run_id=str(current.get("run_id", "")),
                conversation_id=conversation_id,
                outcome=OUTCOME_COMPLETED,
                state=current,
            )
        logger.info("Resuming run %s for conversation %s", current.get("run_id"), conversation_id)
        return await self._drive(None, current, conversation_id, adapter)

    async def _drive(
        self,
        initial: Mapping[str, Any] | None,
        known: Mapping[str, Any],
        conversation_id: str,
        adapter: EventStreamAdapter,
    ) -> RunResult:
        config = thread_config(conversation_id)
        run_id = str(known.get("run_id", ""))
        timeout = self.settings.run_timeout_seconds
        outcome = OUTCOME_COMPLETED
        failure: Exception | None = None
        try:
            async with asyncio.timeout(timeout):
                async for step in self.graph.run(initial, config):
                    logger.debug("Stage %s finished (next stage %s)", step.node, step.stage)
                    adapter.forward(step.events)
        except TimeoutError:
            failure = RunTimeoutError(run_id, timeout)
            outcome = OUTCOME_TIMED_OUT
            logger.warning("%s", failure)
        except Exception as exc:  # noqa: BLE001 - surfaced as a terminal error event.
            failure = exc
            outcome = OUTCOME_FAILED
            logger.exception("Run %s failed", run_id)

        state = await self.graph.get_state(config) or dict(known)
        terminal_event = None
        if failure is not None:
            terminal_event = make_event(
                state,
                type="error",
                agent=AgentId.SYSTEM,
                stage=state.get("status", {}).get("stage", StageId.COORD_PLAN.value),
                summary=(
                    f"Run timed out after {timeout}s"
                    if outcome == OUTCOME_TIMED_OUT
                    else f"Run failed: {failure}"
                ),
                details={"outcome": outcome, "exception": type(failure).__name__, "terminal": True},
            )
            adapter.forward([terminal_event])
        return RunResult(
            run_id=run_id,
            conversation_id=conversation_id,
            outcome=outcome,
            state=state,
            terminal_event=terminal_event,
            forwarded_events=adapter.forwarded,
        )

    async def history(self, conversation_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        return await self.graph.history(thread_config(conversation_id), limit=limit)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.checkpointer.adelete_thread(conversation_id)
        logger.info("Deleted checkpoints for conversation %s", conversation_id)

    async def aclose(self) -> None:
        store = getattr(self.checkpointer, "store", None)
        close = getattr(store, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result
