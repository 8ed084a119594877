"""Narrow interfaces to the collaborators the stage handlers call out to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, TypeVar

from pydantic import BaseModel

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class PatchResult:
    path: str
    success: bool
    error: str | None = None
    deleted: bool = False


class LLMProvider(Protocol):
    """Structured LLM inference: one prompt type in, one validated schema instance out."""

    async def invoke(self, prompt_type: str, payload: Mapping[str, Any], schema: type[ModelT]) -> ModelT: ...


class PatchApplier(Protocol):
    async def apply(self, path: str, unified_diff: str) -> PatchResult: ...

    async def read_file(self, path: str) -> str:
        """Return the file content; raises ``FileNotFoundError`` when the file does not exist."""
        ...


class ContextProvider(Protocol):
    """Infrastructure context (indexed code, dependency graph) for the research stage."""

    async def fetch(self, query: str, *, limit: int = 20) -> list[str]: ...


class EventSink(Protocol):
    """Fire-and-forget consumer of event log entries."""

    def write(self, event: Mapping[str, Any]) -> None: ...
