"""ChatOpenAI-backed ``LLMProvider`` with schema-validated structured output."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Literal, Mapping, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .model_selection import RuntimeModelSelection
from .prompts import PROMPT_AGENTS, render_prompt

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
OutputMethod = Literal["function_calling", "json_mode", "json_schema"]

REQUEST_TIMEOUT_SECONDS = 120


class AsyncRunnable(Protocol):
    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - LangChain runnable signature.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """A ``with_structured_output`` runnable whose replies are checked against ``schema``."""

    schema: type[ModelT]
    runnable: AsyncRunnable

    async def ainvoke(self, prompt: str) -> ModelT:
        """Send ``prompt`` and return the reply as a ``schema`` instance.

        Raises:
            RuntimeError: If the reply is missing, unparseable or fails validation.
        """
        reply = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=reply, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return ``OPENAI_API_KEY``, loading ``<repo_root>/.env`` first when it exists.

    Raises:
        RuntimeError: If no key is configured.
    """
    dotenv_file = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY must be set (environment or .env) to call the agent models")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Build a ChatOpenAI client.

    Client-side retries are disabled; ``StageAgent.ask`` owns retry and
    circuit breaking for every agent call.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If ``OPENAI_API_KEY`` is missing.
    """
    if not model_name.strip():
        raise ValueError("model_name must not be blank")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=0)


def _unwrap(raw_output: Any, schema_name: str) -> Any:
    """Strip the ``include_raw=True`` envelope ``{"raw", "parsed", "parsing_error"}`` if present."""
    if not (isinstance(raw_output, dict) and {"parsed", "parsing_error"} <= raw_output.keys()):
        return raw_output
    error = raw_output["parsing_error"]
    if error is not None:
        raise RuntimeError(f"{schema_name}: model reply could not be parsed: {error!r}") from error
    if raw_output["parsed"] is None:
        raise RuntimeError(f"{schema_name}: model reply contained no structured payload")
    return raw_output["parsed"]


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce a structured-output reply into ``schema``.

    Accepts the ``include_raw`` envelope, an instance of ``schema``, any other
    pydantic model (re-validated from its JSON dump) or a plain dict.

    Raises:
        RuntimeError: If the reply cannot be turned into a valid ``schema``.
    """
    payload = _unwrap(raw_output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"{schema.__name__}: unsupported reply type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__}: reply failed validation: {exc}") from exc


def structured_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
    method: OutputMethod = "function_calling",
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    chat = get_chat_model(model_name=model_name, temperature=temperature, timeout=timeout, repo_root=repo_root)
    runnable = chat.with_structured_output(schema, method=method, include_raw=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


@dataclass
class ChatModelProvider:
    """``LLMProvider`` that routes each prompt type to its agent's model.

    Adapters are created on first use and cached per (prompt type, schema),
    so constructing the provider never needs an API key.
    """

    model_selection: RuntimeModelSelection
    repo_root: Path | None = None
    temperature: float = 0.0
    timeout: int = REQUEST_TIMEOUT_SECONDS
    _cache: dict[tuple[str, type], StructuredOutputAdapter[Any]] = field(default_factory=dict, init=False, repr=False)

    def adapter_for(self, prompt_type: str, schema: type[ModelT]) -> StructuredOutputAdapter[ModelT]:
        cached = self._cache.get((prompt_type, schema))
        if cached is not None:
            return cached
        agent = PROMPT_AGENTS.get(prompt_type)
        if agent is None:
            raise ValueError(f"Unknown prompt type: {prompt_type}")
        model_name = self.model_selection.resolve(agent)
        logger.debug("Prompt %s -> %s (%s)", prompt_type, model_name, schema.__name__)
        adapter = structured_model(
            model_name=model_name,
            schema=schema,
            temperature=self.temperature,
            timeout=self.timeout,
            repo_root=self.repo_root,
        )
        self._cache[(prompt_type, schema)] = adapter
        return adapter

    async def invoke(self, prompt_type: str, payload: Mapping[str, Any], schema: type[ModelT]) -> ModelT:
        return await self.adapter_for(prompt_type, schema).ainvoke(render_prompt(prompt_type, payload))
