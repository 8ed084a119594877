from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mas_orchestrator.errors import CircuitOpenError
from mas_orchestrator.resilience import (
    MAX_INPUT_CHARS,
    CircuitBreaker,
    RetryPolicy,
    is_retryable,
    safe_stage_execution,
    sanitize_input,
    with_retry,
    with_timeout,
)
from mas_orchestrator.state import new_run_state


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Flaky:
    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.exc = exc or ConnectionError("upstream reset")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def _policy(delays: list[float], max_retries: int = 3) -> RetryPolicy:
    async def record(delay: float) -> None:
        delays.append(delay)

    return RetryPolicy(max_retries=max_retries, base_delay=1.0, sleep=record)


def test_retry_backs_off_exponentially_and_stops_at_cap() -> None:
    delays: list[float] = []
    flaky = _Flaky(failures=10)
    with pytest.raises(ConnectionError):
        asyncio.run(with_retry(flaky, _policy(delays)))
    assert flaky.calls == 3
    assert delays == [1.0, 2.0]


def test_retry_returns_first_success() -> None:
    delays: list[float] = []
    flaky = _Flaky(failures=1)
    assert asyncio.run(with_retry(flaky, _policy(delays))) == "ok"
    assert flaky.calls == 2
    assert delays == [1.0]


def test_non_retryable_errors_stop_immediately() -> None:
    flagged = RuntimeError("bad request")
    flagged.retryable = False  # type: ignore[attr-defined]
    for exc in (flagged, ValueError("context_length_exceeded: prompt too long")):
        delays: list[float] = []
        flaky = _Flaky(failures=10, exc=exc)
        with pytest.raises(type(exc)):
            asyncio.run(with_retry(flaky, _policy(delays)))
        assert flaky.calls == 1
        assert delays == []


def test_is_retryable_defaults_to_true() -> None:
    assert is_retryable(TimeoutError("slow"))
    assert not is_retryable(RuntimeError("Context too large for model"))


def test_retry_fallback_replaces_final_error() -> None:
    delays: list[float] = []
    assert asyncio.run(with_retry(_Flaky(failures=10), _policy(delays, max_retries=2), fallback=None)) is None
    assert delays == [1.0]


def test_retry_policy_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1)


def test_circuit_breaker_opens_cools_down_and_closes() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60, clock=clock)
    failing = _Flaky(failures=100)

    async def scenario() -> None:
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call("coordinator:plan", failing)
        assert breaker.state("coordinator:plan") == "open"
        assert breaker.state("qc:review") == "closed"

        assert await breaker.call("coordinator:plan", failing, fallback="cached") == "cached"
        assert failing.calls == 2
        with pytest.raises(CircuitOpenError) as info:
            await breaker.call("coordinator:plan", failing)
        assert info.value.name == "coordinator:plan"

        clock.now = 60
        assert breaker.state("coordinator:plan") == "half_open"
        with pytest.raises(ConnectionError):
            await breaker.call("coordinator:plan", failing)
        assert breaker.state("coordinator:plan") == "open"

        clock.now = 120
        assert await breaker.call("coordinator:plan", _Flaky(failures=0)) == "ok"
        assert breaker.state("coordinator:plan") == "closed"

    asyncio.run(scenario())


def test_circuit_breaker_success_resets_failure_count() -> None:
    breaker = CircuitBreaker(failure_threshold=2, clock=_Clock())

    async def scenario() -> None:
        with pytest.raises(ConnectionError):
            await breaker.call("a", _Flaky(failures=1))
        assert await breaker.call("a", _Flaky(failures=0)) == "ok"
        with pytest.raises(ConnectionError):
            await breaker.call("a", _Flaky(failures=1))
        assert breaker.state("a") == "closed"

    asyncio.run(scenario())


def test_safe_stage_execution_turns_faults_into_fallback_updates() -> None:
    state = new_run_state(request_text="x", conversation_id="c")

    async def explode(_: Any) -> dict[str, Any]:
        raise KeyError("plan")

    wrapped = safe_stage_execution("architect", explode, lambda _: {"warnings": ["degraded"]})
    update = asyncio.run(wrapped(state))

    assert update["warnings"] == ["degraded"]
    assert update["error"]["node"] == "architect"
    assert update["errors"] == ["architect: 'plan'"]
    [event] = update["events"]
    assert event["type"] == "error"
    assert event["details"] == {"node": "architect", "exception": "KeyError"}


def test_safe_stage_execution_rejects_unknown_stage() -> None:
    state = new_run_state(request_text="x", conversation_id="c")

    async def wander(_: Any) -> dict[str, Any]:
        return {"status": {"stage": "NOWHERE"}}

    update = asyncio.run(safe_stage_execution("qc1", wander, known_stages={"QC1", "QC2"})(state))
    assert update["status"] == {"stage_state": "failed"}
    assert "NOWHERE" in update["error"]["message"]


def test_safe_stage_execution_passes_through_valid_updates() -> None:
    async def ok(_: Any) -> dict[str, Any]:
        return {"status": {"stage": "QC2"}}

    assert asyncio.run(safe_stage_execution("qc1", ok, known_stages={"QC2"})({})) == {"status": {"stage": "QC2"}}


def test_sanitize_input_strips_active_content_and_caps_length() -> None:
    dirty = 'Build <script>alert("x")</script>a page <a href="javascript:go()" onclick="x()">link</a>'
    cleaned = sanitize_input(dirty)
    assert "<script" not in cleaned
    assert "javascript:" not in cleaned
    assert "onclick=" not in cleaned
    assert cleaned.startswith("Build")
    assert len(sanitize_input("a" * (MAX_INPUT_CHARS + 50))) == MAX_INPUT_CHARS


def test_with_timeout_uses_fallback_or_raises() -> None:
    async def slow() -> str:
        await asyncio.sleep(10)
        return "late"

    assert asyncio.run(with_timeout(slow(), 0.01, fallback="fallback")) == "fallback"
    with pytest.raises(TimeoutError):
        asyncio.run(with_timeout(slow(), 0.01))
