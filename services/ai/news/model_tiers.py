# services/ai/news/model_tiers.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Dict, Literal

ModelTier = Literal["premium", "standard", "economy"]
DEFAULT_TIER: ModelTier = "standard"


@dataclass(frozen=True)
class ModelConfig:
    strategist: str
    executor: str
    strategist_temp: float
    executor_temp: float
    strategist_max_tokens: int
    executor_max_tokens: int


# standard: stronger strategist, cheaper executor
MODEL_TIERS: Dict[str, Dict[str, ModelConfig]] = {
    "openai": {
        "premium": ModelConfig("gpt-4o", "gpt-4o", 0.2, 0.1, 4000, 4000),
        "standard": ModelConfig("gpt-4o", "gpt-4o-mini", 0.3, 0.2, 3000, 3000),
        "economy": ModelConfig("gpt-4o-mini", "gpt-4o-mini", 0.3, 0.2, 2500, 2500),
    },
    "anthropic": {
        "premium": ModelConfig("claude-3-5-sonnet-latest", "claude-3-5-sonnet-latest", 0.2, 0.1, 4000, 4000),
        "standard": ModelConfig("claude-3-5-sonnet-latest", "claude-3-5-haiku-latest", 0.3, 0.2, 3000, 3000),
        "economy": ModelConfig("claude-3-5-haiku-latest", "claude-3-5-haiku-latest", 0.3, 0.2, 2500, 2500),
    },
    "gemini": {
        "premium": ModelConfig("gemini-2.5-pro", "gemini-2.5-pro", 0.2, 0.1, 4000, 4000),
        "standard": ModelConfig("gemini-2.5-pro", "gemini-2.5-flash", 0.3, 0.2, 3000, 3000),
        "economy": ModelConfig("gemini-2.5-flash", "gemini-2.5-flash", 0.3, 0.2, 2500, 2500),
    },
}


def normalize_tier(tier: str) -> str:
    t = (tier or DEFAULT_TIER).strip().lower()
    if t not in MODEL_TIERS["openai"]:
        raise ValueError(f"Unknown model tier: {tier}")
    return t


def resolve_model_config(tier: str, provider: str = "openai") -> ModelConfig:
    """Tier config for a provider, with NEWS_<TIER>_{STRATEGIST,EXECUTOR}_MODEL overrides."""
    t = normalize_tier(tier)
    table = MODEL_TIERS.get((provider or "openai").lower(), MODEL_TIERS["openai"])
    cfg = table[t]
    prefix = f"NEWS_{t.upper()}"
    return replace(
        cfg,
        strategist=os.getenv(f"{prefix}_STRATEGIST_MODEL") or cfg.strategist,
        executor=os.getenv(f"{prefix}_EXECUTOR_MODEL") or cfg.executor,
    )
