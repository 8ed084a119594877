from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from .settings import RuntimeSettings


VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
    "economy": "gpt-4o-mini",
}

# Planning and patch generation need the strongest model; review work runs cheaper.
DEFAULT_AGENT_TIERS: dict[str, str] = {
    "coordinator": "frontier",
    "researcher": "efficient",
    "architect": "frontier",
    "qc": "efficient",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps agents to concrete model identifiers through model tiers.

    Each agent is assigned a tier (frontier, efficient, economy); ``resolve``
    translates the tier into a model name. ``agent_overrides`` pins a specific
    agent to a model regardless of its tier.
    """

    by_tier: dict[str, str]
    agent_tiers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_AGENT_TIERS))
    agent_overrides: dict[str, str] = field(default_factory=dict)
    provider: str = "openai"

    def __post_init__(self) -> None:
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")
        for agent, tier in self.agent_tiers.items():
            if tier not in VALID_TIERS:
                raise ValueError(f"Agent '{agent}' is assigned unknown model tier '{tier}'")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        """Build model selection from runtime settings plus optional per-agent overrides.

        Environment variables:
            MAS_MODEL_AGENT_OVERRIDES_JSON: JSON object mapping agent name to model name.

        Returns:
            RuntimeModelSelection with all three tiers populated.

        Raises:
            ValueError: If the override payload is not a JSON object of strings.
        """
        by_tier = {
            "frontier": settings.model_frontier,
            "efficient": settings.model_efficient,
            "economy": settings.model_economy,
        }
        return cls(by_tier=by_tier, agent_overrides=_load_agent_overrides())

    @classmethod
    def from_env(cls) -> "RuntimeModelSelection":
        return cls.from_settings(RuntimeSettings.from_env())

    def resolve(self, agent: str) -> str:
        """Resolve an agent name to a concrete model name.

        Raises:
            ValueError: If the agent has neither an override nor a tier assignment.
        """
        override = self.agent_overrides.get(agent)
        if override:
            return override
        tier = self.agent_tiers.get(agent)
        if tier is None:
            available = ", ".join(sorted(self.agent_tiers))
            raise ValueError(f"No model tier assigned to agent '{agent}'. Known agents: {available}")
        return self.by_tier[tier]

    def describe(self) -> dict[str, dict[str, str]]:
        """Return the ``agent_models`` mapping recorded on each run."""
        agents = sorted(set(self.agent_tiers) | set(self.agent_overrides))
        return {agent: {"provider": self.provider, "model": self.resolve(agent)} for agent in agents}


def _load_agent_overrides() -> dict[str, str]:
    raw = os.getenv("MAS_MODEL_AGENT_OVERRIDES_JSON", "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"MAS_MODEL_AGENT_OVERRIDES_JSON is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("MAS_MODEL_AGENT_OVERRIDES_JSON must be a JSON object")
    overrides: dict[str, str] = {}
    for agent, model_name in payload.items():
        if not isinstance(model_name, str) or not model_name.strip():
            raise ValueError(f"MAS_MODEL_AGENT_OVERRIDES_JSON entry '{agent}' must be a non-empty string")
        overrides[str(agent)] = model_name.strip()
    return overrides
