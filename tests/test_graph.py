from __future__ import annotations

import asyncio
import operator
from typing import Annotated, Any, Mapping, TypedDict

import pytest

from mas_orchestrator.checkpoint import KeyValueCheckpointSaver
from mas_orchestrator.errors import GraphDefinitionError, RoutingError
from mas_orchestrator.graph import (
    END,
    ConditionalRoute,
    StageGraphDefinition,
    StageSpec,
    compile_stage_graph,
    thread_config,
)
from mas_orchestrator.kv import InMemoryKeyValueStore
from mas_orchestrator.state import concat, keep_latest, shallow_override


class CounterState(TypedDict, total=False):
    count: Annotated[int, operator.add]
    status: Annotated[dict[str, Any], shallow_override]
    events: Annotated[list[dict[str, Any]], concat]
    errors: Annotated[list[str], concat]
    error: Annotated[dict[str, Any] | None, keep_latest]


async def _bump(state: Mapping[str, Any]) -> dict[str, Any]:
    return {"count": 1, "status": {"stage": "QC1"}}


async def _noop(state: Mapping[str, Any]) -> dict[str, Any]:
    return {"status": {"stage": "FINALIZE"}}


def _loop_definition(predicate: Any = None, *, handler: Any = _bump) -> StageGraphDefinition:
    return StageGraphDefinition(
        state_schema=CounterState,
        entry="bump",
        stages=[StageSpec("bump", "QC1", handler), StageSpec("done", "FINALIZE", _noop)],
        edges=[("done", END)],
        routes=[
            ConditionalRoute(
                "bump",
                predicate or (lambda state: "again" if state.get("count", 0) < 3 else "stop"),
                {"again": "bump", "stop": "done"},
            )
        ],
    )


def _compile(definition: StageGraphDefinition) -> Any:
    return compile_stage_graph(definition, checkpointer=KeyValueCheckpointSaver(InMemoryKeyValueStore()))


def test_conditional_loop_runs_until_predicate_stops() -> None:
    graph = _compile(_loop_definition())
    config = thread_config("loop")

    async def scenario() -> None:
        updates = [update async for update in graph.run({"count": 0}, config)]
        assert [update.node for update in updates] == ["bump", "bump", "bump", "done"]
        assert [update.stage for update in updates] == ["QC1", "QC1", "QC1", "FINALIZE"]
        state = await graph.get_state(config)
        assert state["count"] == 3
        assert state["status"] == {"stage": "FINALIZE"}
        assert await graph.next_stages(config) == ()
        history = await graph.history(config)
        assert history[0]["count"] == 3
        assert len(history) >= 5

    asyncio.run(scenario())


def test_stage_fault_is_recorded_and_run_continues() -> None:
    calls = {"n": 0}

    async def sometimes(state: Mapping[str, Any]) -> dict[str, Any]:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("model returned garbage")
        return {"count": 5}

    graph = _compile(_loop_definition(handler=sometimes))

    async def scenario() -> None:
        updates = [update async for update in graph.run({"count": 0}, thread_config("fault"))]
        assert updates[0].failed
        assert updates[0].error is not None and updates[0].error["message"] == "model returned garbage"
        assert updates[0].update["errors"] == ["bump: model returned garbage"]
        assert [update.node for update in updates] == ["bump", "bump", "done"]

    asyncio.run(scenario())


def test_unknown_route_outcome_raises_routing_error() -> None:
    graph = _compile(_loop_definition(lambda state: "sideways"))

    async def scenario() -> None:
        async for _ in graph.run({"count": 0}, thread_config("bad-route")):
            pass

    with pytest.raises(RoutingError, match="sideways"):
        asyncio.run(scenario())


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda d: d.stages.append(StageSpec("done", "FINALIZE", _noop)), "Duplicate"),
        (lambda d: setattr(d, "entry", "missing"), "Entry stage"),
        (lambda d: d.edges.clear(), "exactly one outgoing"),
        (lambda d: d.edges.append(("done", "bump")), "exactly one outgoing"),
        (lambda d: d.edges.__setitem__(0, ("done", "ghost")), "ghost"),
        (lambda d: d.routes.__setitem__(0, ConditionalRoute("bump", len, {"x": "ghost"})), "ghost"),
    ],
)
def test_invalid_definitions_are_rejected(mutate: Any, message: str) -> None:
    definition = _loop_definition()
    mutate(definition)
    with pytest.raises(GraphDefinitionError, match=message):
        _compile(definition)
