"""Failure isolation around unreliable calls: retry, circuit breaker, safe stage execution."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Mapping, TypeVar

from .errors import CircuitOpenError
from .models import AgentId, StageId, utc_now
from .state import make_event

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]
StageHandler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]
StageFallback = Callable[[Mapping[str, Any]], dict[str, Any]]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

NON_RETRYABLE_MARKERS: tuple[str, ...] = ("context_length_exceeded", "context too large")

MAX_INPUT_CHARS = 10_000
_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)

REQUIRED_STATE_KEYS: tuple[str, ...] = ("run_id", "conversation_id", "status", "inputs", "events")


def is_retryable(exc: BaseException) -> bool:
    """Classify a failure; explicit ``retryable=False`` or a context-size signal stops retries."""
    flag = getattr(exc, "retryable", None)
    if flag is False:
        return False
    message = str(exc).lower()
    return not any(marker in message for marker in NON_RETRYABLE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: attempt ``n`` waits ``base_delay * 2**n`` before the next try."""

    max_retries: int = 3
    base_delay: float = 1.0
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2**attempt)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    fallback: Any = MISSING,
    label: str = "operation",
) -> T:
    """Run ``fn`` at most ``policy.max_retries`` times.

    Args:
        fn: Zero-argument coroutine factory for the external call.
        policy: Retry bounds and backoff; defaults to three attempts with a 1s base delay.
        fallback: Value returned once attempts are exhausted. When omitted the
            last error is re-raised instead.
        label: Name used in log records.

    Returns:
        The first successful result, or ``fallback``.

    Raises:
        Exception: The last failure when no fallback was supplied.
    """
    policy = policy or RetryPolicy()
    last_error: Exception | None = None
    for attempt in range(policy.max_retries):
        try:
            return await fn()
        except Exception as exc:  # noqa: BLE001 - every failure is classified below.
            last_error = exc
            if not is_retryable(exc):
                logger.warning("%s failed with non-retryable error: %s", label, exc)
                break
            if attempt + 1 >= policy.max_retries:
                logger.warning("%s failed after %d attempts: %s", label, attempt + 1, exc)
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying in %.2fs",
                label,
                attempt + 1,
                policy.max_retries,
                exc,
                delay,
            )
            await policy.sleep(delay)

    if fallback is not MISSING:
        return fallback
    assert last_error is not None
    raise last_error


@dataclass
class _CircuitState:
    failures: int = 0
    opened_at: float | None = None


@dataclass
class CircuitBreaker:
    """Per-name failure tracking that short-circuits calls after repeated failures.

    A circuit opens after ``failure_threshold`` consecutive failures. While open,
    ``call`` returns the caller's fallback without attempting the operation.
    After ``reset_timeout`` seconds one trial call is let through; success
    closes the circuit, failure re-opens it for another cooldown.
    """

    failure_threshold: int = 3
    reset_timeout: float = 60.0
    clock: ClockFn = time.monotonic
    _circuits: dict[str, _CircuitState] = field(default_factory=dict, init=False, repr=False)

    def state(self, name: str) -> str:
        circuit = self._circuits.get(name)
        if circuit is None or circuit.opened_at is None:
            return "closed"
        if self.clock() - circuit.opened_at >= self.reset_timeout:
            return "half_open"
        return "open"

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        fallback: Any = MISSING,
    ) -> T:
        circuit = self._circuits.setdefault(name, _CircuitState())
        if self.state(name) == "open":
            if fallback is not MISSING:
                return fallback
            assert circuit.opened_at is not None
            raise CircuitOpenError(name, self.reset_timeout - (self.clock() - circuit.opened_at))

        try:
            result = await fn()
        except Exception:
            self._record_failure(name, circuit)
            if fallback is not MISSING:
                return fallback
            raise

        if circuit.opened_at is not None:
            logger.info("Circuit '%s' closed after successful trial call", name)
        circuit.failures = 0
        circuit.opened_at = None
        return result

    def _record_failure(self, name: str, circuit: _CircuitState) -> None:
        was_open = circuit.opened_at is not None
        circuit.failures += 1
        if was_open:
            circuit.opened_at = self.clock()
            logger.warning("Circuit '%s' trial call failed; staying open for %.0fs", name, self.reset_timeout)
        elif circuit.failures >= self.failure_threshold:
            circuit.opened_at = self.clock()
            logger.warning(
                "Circuit '%s' opened after %d failures; cooling down for %.0fs",
                name,
                circuit.failures,
                self.reset_timeout,
            )


async def with_timeout(awaitable: Awaitable[T], seconds: float, fallback: Any = MISSING) -> T:
    """Race ``awaitable`` against ``seconds``; on expiry return ``fallback`` or raise ``TimeoutError``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError:
        if fallback is MISSING:
            raise
        logger.warning("Operation timed out after %.1fs; using fallback", seconds)
        return fallback


def sanitize_input(text: str) -> str:
    """Strip script blocks, ``javascript:`` URLs and inline event handlers, then cap the length."""
    cleaned = _SCRIPT_BLOCK.sub("", text)
    cleaned = _JS_PROTOCOL.sub("", cleaned)
    cleaned = _INLINE_HANDLER.sub("", cleaned)
    return cleaned.strip()[:MAX_INPUT_CHARS]


def validate_run_state(state: Mapping[str, Any], known_stages: Collection[str] | None = None) -> list[str]:
    """Return a list of structural problems with ``state``; empty means valid."""
    problems = [f"missing required key '{key}'" for key in REQUIRED_STATE_KEYS if key not in state]
    status = state.get("status")
    if isinstance(status, Mapping):
        stage = status.get("stage")
        allowed = set(known_stages) if known_stages is not None else {item.value for item in StageId}
        if stage not in allowed:
            problems.append(f"status.stage {stage!r} is not a known stage")
    elif "status" in state:
        problems.append("status must be a mapping")
    if "events" in state and not isinstance(state["events"], list):
        problems.append("events must be a list")
    return problems


def report_stage_error(node: str, exc: BaseException, state: Mapping[str, Any]) -> dict[str, Any]:
    """Log a stage fault with run context and return the ``error`` object recorded in state."""
    error = {"node": node, "message": str(exc) or type(exc).__name__, "timestamp": utc_now()}
    logger.error(
        "Stage '%s' failed for run %s (conversation %s): %s",
        node,
        state.get("run_id", "?"),
        state.get("conversation_id", "?"),
        error["message"],
        exc_info=exc,
    )
    return error


def default_stage_fallback(state: Mapping[str, Any]) -> dict[str, Any]:
    return {"status": {"stage_state": "failed"}}


def safe_stage_execution(
    node: str,
    handler: StageHandler,
    fallback: StageFallback | None = None,
    *,
    known_stages: Collection[str] | None = None,
) -> StageHandler:
    """Wrap a stage handler so an unexpected fault becomes a recorded fallback update.

    The wrapped handler never raises ``Exception``. On failure it returns the
    fallback update plus an ``error`` object ``{node, message, timestamp}``, an
    ``errors`` entry and a user-visible ``error`` event. An update that moves
    ``status.stage`` outside ``known_stages`` is treated as a fault.
    """
    fallback = fallback or default_stage_fallback

    async def run(state: Mapping[str, Any]) -> dict[str, Any]:
        try:
            update = await handler(state)
            if update is None:
                return {}
            if not isinstance(update, Mapping):
                raise TypeError(f"handler returned {type(update).__name__}, expected a mapping")
            next_stage = (update.get("status") or {}).get("stage")
            if known_stages is not None and next_stage is not None and next_stage not in known_stages:
                raise ValueError(f"handler moved status.stage to unknown stage {next_stage!r}")
            return dict(update)
        except Exception as exc:  # noqa: BLE001 - converted into a recorded fallback update.
            error = report_stage_error(node, exc, state)
            recovery = dict(fallback(state))
            recovery["error"] = error
            recovery["errors"] = [*recovery.get("errors", []), f"{node}: {error['message']}"]
            recovery["events"] = [
                *recovery.get("events", []),
                make_event(
                    state,
                    type="error",
                    agent=AgentId.SYSTEM,
                    summary=f"Stage '{node}' failed: {error['message']}",
                    details={"node": node, "exception": type(exc).__name__},
                ),
            ]
            return recovery

    run.__name__ = f"safe_{node}"
    return run
