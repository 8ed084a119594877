"""Stage graph executor built on LangGraph.

A ``StageGraphDefinition`` names the stages, their handlers and fallbacks,
the static edges and the conditional routes. ``compile_stage_graph``
validates it and compiles a LangGraph ``StateGraph`` whose channels merge
with the functions declared on the state schema. Execution is strictly
sequential: one stage runs, its update is merged, the checkpoint is
persisted, then the outgoing edge is evaluated.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Annotated, Any, AsyncIterator, Callable, Mapping, get_args, get_origin, get_type_hints

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, START, StateGraph

from .checkpoint import checkpoint_config
from .errors import GraphDefinitionError, RoutingError
from .resilience import StageFallback, StageHandler, safe_stage_execution

logger = logging.getLogger(__name__)

RoutingPredicate = Callable[[Mapping[str, Any]], str]

__all__ = [
    "END",
    "ConditionalRoute",
    "ExecutableGraph",
    "StageGraphDefinition",
    "StageSpec",
    "StageUpdate",
    "channel_merges",
    "compile_stage_graph",
    "thread_config",
]


@dataclass(frozen=True)
class StageSpec:
    """A named node of the pipeline, the stage id it owns, and how it recovers from faults."""

    name: str
    stage: str
    handler: StageHandler
    fallback: StageFallback | None = None


@dataclass(frozen=True)
class ConditionalRoute:
    """Outgoing edge chosen by ``predicate`` from a fixed set of outcome labels."""

    source: str
    predicate: RoutingPredicate
    outcomes: Mapping[str, str]


@dataclass
class StageGraphDefinition:
    state_schema: type
    entry: str
    stages: list[StageSpec]
    edges: list[tuple[str, str]] = field(default_factory=list)
    routes: list[ConditionalRoute] = field(default_factory=list)
    extra_stages: frozenset[str] = frozenset()

    @property
    def stage_ids(self) -> frozenset[str]:
        return frozenset(spec.stage for spec in self.stages) | self.extra_stages


@dataclass(frozen=True)
class StageUpdate:
    """One step of a run as observed from outside: the partial update a stage returned."""

    node: str
    update: dict[str, Any]
    stage: str | None = None
    events: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def thread_config(thread_id: str, namespace: str = "", checkpoint_id: str | None = None) -> RunnableConfig:
    return checkpoint_config(thread_id, namespace, checkpoint_id)


def channel_merges(state_schema: type) -> dict[str, Callable[[Any, Any], Any]]:
    """Return the merge function declared for every channel of ``state_schema``.

    Raises:
        GraphDefinitionError: If any channel lacks an ``Annotated`` merge function.
    """
    merges: dict[str, Callable[[Any, Any], Any]] = {}
    for name, hint in get_type_hints(state_schema, include_extras=True).items():
        merge = None
        if get_origin(hint) is Annotated:
            merge = next((item for item in get_args(hint)[1:] if callable(item)), None)
        if merge is None:
            raise GraphDefinitionError(f"Channel '{name}' has no merge function declared")
        merges[name] = merge
    return merges


def _validate(definition: StageGraphDefinition) -> None:
    names = [spec.name for spec in definition.stages]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise GraphDefinitionError(f"Duplicate stage names: {', '.join(duplicates)}")
    for name in names:
        if not name or name in {START, END}:
            raise GraphDefinitionError(f"Invalid stage name: {name!r}")
    known = set(names)
    if definition.entry not in known:
        raise GraphDefinitionError(f"Entry stage '{definition.entry}' is not defined")

    outgoing: dict[str, int] = {name: 0 for name in names}
    for source, target in definition.edges:
        if source not in known:
            raise GraphDefinitionError(f"Edge source '{source}' is not a defined stage")
        if target != END and target not in known:
            raise GraphDefinitionError(f"Edge target '{target}' is not a defined stage")
        outgoing[source] += 1
    for route in definition.routes:
        if route.source not in known:
            raise GraphDefinitionError(f"Route source '{route.source}' is not a defined stage")
        if not route.outcomes:
            raise GraphDefinitionError(f"Route from '{route.source}' declares no outcomes")
        for label, target in route.outcomes.items():
            if target != END and target not in known:
                raise GraphDefinitionError(
                    f"Route from '{route.source}' maps outcome '{label}' to unknown stage '{target}'"
                )
        outgoing[route.source] += 1

    for name, count in outgoing.items():
        if count != 1:
            raise GraphDefinitionError(f"Stage '{name}' must have exactly one outgoing edge or route, found {count}")

    channel_merges(definition.state_schema)


def _guard_route(route: ConditionalRoute) -> Callable[[Mapping[str, Any]], str]:
    allowed = set(route.outcomes)

    def choose(state: Mapping[str, Any]) -> str:
        outcome = route.predicate(state)
        if outcome not in allowed:
            raise RoutingError(
                f"Route from '{route.source}' returned '{outcome}', expected one of {sorted(allowed)}"
            )
        logger.debug("Routing %s -> %s", route.source, route.outcomes[outcome])
        return outcome

    choose.__name__ = f"route_after_{route.source}"
    return choose


class ExecutableGraph:
    """A compiled stage graph that streams one ``StageUpdate`` per executed stage."""

    def __init__(
        self,
        compiled: Any,
        definition: StageGraphDefinition,
        *,
        checkpointer: BaseCheckpointSaver,
        recursion_limit: int,
    ) -> None:
        self._compiled = compiled
        self.definition = definition
        self.checkpointer = checkpointer
        self.recursion_limit = recursion_limit

    @property
    def stage_ids(self) -> frozenset[str]:
        return self.definition.stage_ids

    async def run(
        self,
        initial_state: Mapping[str, Any] | None,
        config: RunnableConfig,
    ) -> AsyncIterator[StageUpdate]:
        """Execute the graph from ``initial_state``, or resume the thread when it is ``None``.

        A stage's checkpoint is persisted before the next stage starts. Closing
        the iterator early abandons the run; the last persisted checkpoint is
        left untouched.
        """
        run_config: RunnableConfig = {**config, "recursion_limit": config.get("recursion_limit", self.recursion_limit)}
        stream = self._compiled.astream(
            dict(initial_state) if initial_state is not None else None,
            run_config,
            stream_mode="updates",
            durability="sync",
        )
        async with aclosing(stream):
            async for chunk in stream:
                for node, update in chunk.items():
                    if node.startswith("__"):
                        continue
                    payload = dict(update or {})
                    stage = (payload.get("status") or {}).get("stage")
                    yield StageUpdate(
                        node=node,
                        update=payload,
                        stage=stage,
                        events=list(payload.get("events", [])),
                        error=payload.get("error") or None,
                    )

    async def get_state(self, config: RunnableConfig) -> dict[str, Any]:
        snapshot = await self._compiled.aget_state(config)
        return dict(snapshot.values or {})

    async def next_stages(self, config: RunnableConfig) -> tuple[str, ...]:
        snapshot = await self._compiled.aget_state(config)
        return tuple(snapshot.next)

    async def history(self, config: RunnableConfig, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Return the thread's state snapshots, newest first."""
        return [
            dict(snapshot.values or {})
            async for snapshot in self._compiled.aget_state_history(config, limit=limit)
        ]


def compile_stage_graph(
    definition: StageGraphDefinition,
    *,
    checkpointer: BaseCheckpointSaver,
    recursion_limit: int = 100,
) -> ExecutableGraph:
    """Validate ``definition`` and compile it into an ``ExecutableGraph``.

    Raises:
        GraphDefinitionError: If the definition is structurally invalid.
    """
    _validate(definition)
    known_stages = definition.stage_ids

    graph = StateGraph(definition.state_schema)
    for spec in definition.stages:
        graph.add_node(spec.name, safe_stage_execution(spec.name, spec.handler, spec.fallback, known_stages=known_stages))
    graph.add_edge(START, definition.entry)
    for source, target in definition.edges:
        graph.add_edge(source, target)
    for route in definition.routes:
        graph.add_conditional_edges(route.source, _guard_route(route), dict(route.outcomes))

    compiled = graph.compile(checkpointer=checkpointer)
    logger.debug("Compiled stage graph with stages: %s", ", ".join(spec.name for spec in definition.stages))
    return ExecutableGraph(compiled, definition, checkpointer=checkpointer, recursion_limit=recursion_limit)
