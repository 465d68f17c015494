# services/ai/news/validation.py
"""
Consistency checks and quality scoring for strategist/executor output.

Everything here is a warning, never an exception. The quality score is a
heuristic weighting; weights and thresholds are tunable from the environment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from services.ai.news.types import (
    AssetImpact,
    ExecutorOutput,
    QualityMetrics,
    StrategistOutput,
)
from services.market.symbols import normalize_symbol, to_tradingview_symbol
from utils.common_helpers import clamp

GUARDRAIL_CLASSIFICATIONS = frozenset({"noise"})


@dataclass(frozen=True)
class QualityWeights:
    strategist: float = 0.4
    adherence: float = 0.3
    executor: float = 0.3
    adherence_penalty: float = 0.1
    missing_executor_confidence: float = 5.0

    @staticmethod
    def from_env() -> "QualityWeights":
        return QualityWeights(
            strategist=float(os.getenv("NEWS_QUALITY_W_STRATEGIST", "0.4")),
            adherence=float(os.getenv("NEWS_QUALITY_W_ADHERENCE", "0.3")),
            executor=float(os.getenv("NEWS_QUALITY_W_EXECUTOR", "0.3")),
            adherence_penalty=float(os.getenv("NEWS_QUALITY_ADHERENCE_PENALTY", "0.1")),
        )


@dataclass(frozen=True)
class ValidationThresholds:
    low_incremental_info: float = 3.0
    probability_tolerance: float = 0.1
    guardrail_max_conviction: int = 5

    @staticmethod
    def from_env() -> "ValidationThresholds":
        return ValidationThresholds(
            low_incremental_info=float(os.getenv("NEWS_LOW_INCREMENTAL_INFO", "3")),
            probability_tolerance=float(os.getenv("NEWS_PROBABILITY_TOLERANCE", "0.1")),
            guardrail_max_conviction=int(os.getenv("NEWS_GUARDRAIL_MAX_CONVICTION", "5")),
        )


def _probability_warning(label: str, probs: Tuple[Optional[float], ...], tolerance: float) -> Optional[str]:
    total = sum(p or 0.0 for p in probs)
    if abs(total - 1.0) > tolerance + 1e-9:
        return f"{label}probabilities sum to {total * 100:.0f}% (should be ~100%)"
    return None


def validate_strategy(
    strategy: StrategistOutput,
    thresholds: Optional[ValidationThresholds] = None,
) -> List[str]:
    th = thresholds or ValidationThresholds()
    warnings: List[str] = []
    nature = strategy.information_nature
    impact = strategy.market_impact_logic

    if not nature.classification:
        warnings.append("Missing information classification")
    if not impact.transmission_mechanisms:
        warnings.append("No transmission mechanisms defined")
    if not strategy.required_data.market_prices:
        warnings.append("No market prices specified")
    if not strategy.executor_instructions.mandatory_tasks:
        warnings.append("No mandatory tasks for executor")

    if nature.classification == "noise" and impact.should_move_markets:
        warnings.append("Contradiction: Classified as noise but should move markets")

    score = strategy.epistemic_assessment.incremental_info_score
    if score is not None and score < th.low_incremental_info and impact.should_move_markets:
        warnings.append("Low incremental info but expecting market movement")

    # extra check on the plan itself; strategy warnings never touch adherence
    m = strategy.output_design.scenario_matrix
    w = _probability_warning(
        "Strategy scenario ",
        (m.base.probability, m.upside.probability, m.downside.probability),
        th.probability_tolerance,
    )
    if w:
        warnings.append(w)
    return warnings


def _impact_keys(impact: AssetImpact) -> Set[str]:
    keys = set()
    for raw in (impact.trading_view_symbol, impact.asset, impact.normalized_symbol):
        if raw:
            keys.add(normalize_symbol(raw))
    keys.discard("")
    return keys


def validate_executor(
    analysis: ExecutorOutput,
    strategy: StrategistOutput,
    thresholds: Optional[ValidationThresholds] = None,
) -> List[str]:
    th = thresholds or ValidationThresholds()
    warnings: List[str] = []

    overall = analysis.confidence.overall
    floor = strategy.executor_instructions.confidence_floor or 0.0
    if overall is not None and overall < floor * 10:
        warnings.append("Confidence below strategist floor")

    covered: Set[str] = set()
    for impact in analysis.asset_impacts:
        covered |= _impact_keys(impact)
    missing = [
        p.symbol
        for p in strategy.required_data.market_prices
        if p.symbol and normalize_symbol(p.symbol) not in covered
    ]
    if missing:
        warnings.append(f"Missing analysis for: {', '.join(missing)}")

    s = analysis.scenario_analysis
    w = _probability_warning(
        "Scenario ",
        (s.base.probability, s.upside.probability, s.downside.probability),
        th.probability_tolerance,
    )
    if w:
        warnings.append(w)
    return warnings


def enrich_asset_symbols(analysis: ExecutorOutput) -> ExecutorOutput:
    """Copy with normalizedSymbol filled and tradingViewSymbol defaulted."""
    impacts = []
    for a in analysis.asset_impacts:
        source = a.trading_view_symbol or a.asset
        impacts.append(a.model_copy(update={
            "normalized_symbol": normalize_symbol(source) if source else "",
            "trading_view_symbol": a.trading_view_symbol or (to_tradingview_symbol(a.asset) or ""),
        }))
    return analysis.model_copy(update={"asset_impacts": impacts})


def apply_conviction_guardrail(
    analysis: ExecutorOutput,
    strategy: StrategistOutput,
    thresholds: Optional[ValidationThresholds] = None,
) -> Tuple[ExecutorOutput, List[str]]:
    """
    Cap asset convictions when the plan says the item should not move markets
    or classifies it as noise. A confirmation that the strategist still expects
    to move markets is left alone.

    Returns a new ExecutorOutput; the input is left untouched.
    """
    th = thresholds or ValidationThresholds()
    cap = th.guardrail_max_conviction
    guarded = (
        not strategy.market_impact_logic.should_move_markets
        or strategy.information_nature.classification in GUARDRAIL_CLASSIFICATIONS
    )
    if not guarded:
        return analysis, []

    capped: List[str] = []
    impacts = []
    for a in analysis.asset_impacts:
        if a.conviction is not None and a.conviction > cap:
            capped.append(a.asset or a.trading_view_symbol or "?")
            impacts.append(a.model_copy(update={"conviction": cap}))
        else:
            impacts.append(a)
    if not capped:
        return analysis, []

    reason = (
        "classified as noise" if strategy.market_impact_logic.should_move_markets
        else "strategy expects no market move"
    )
    warning = f"Conviction capped at {cap} for {', '.join(capped)}: {reason}"
    return analysis.model_copy(update={"asset_impacts": impacts}), [warning]


def compute_quality(
    strategy: StrategistOutput,
    analysis: Optional[ExecutorOutput],
    strategy_warnings: List[str],
    executor_warnings: List[str],
    weights: Optional[QualityWeights] = None,
    notes: Sequence[str] = (),
) -> QualityMetrics:
    """
    ``analysis=None`` means the executor was skipped: adherence is 0 and the
    overall score is the strategist's own confidence.

    Only ``executor_warnings`` cost adherence. ``notes`` (guardrail
    corrections) are reported with the warnings but not penalized.
    """
    w = weights or QualityWeights()
    strategist_conf = strategy.information_nature.confidence or 0.0

    if analysis is None:
        return QualityMetrics(
            strategist_confidence=strategist_conf,
            executor_adherence=0.0,
            overall_quality=strategist_conf,
            warnings=list(strategy_warnings),
        )

    adherence = max(0.0, 1.0 - w.adherence_penalty * len(executor_warnings))
    overall = analysis.confidence.overall
    executor_conf = (overall if overall is not None else w.missing_executor_confidence) / 10.0
    quality = w.strategist * strategist_conf + w.adherence * adherence + w.executor * executor_conf
    return QualityMetrics(
        strategist_confidence=strategist_conf,
        executor_adherence=adherence,
        overall_quality=round(clamp(quality, 0.0, 1.0), 4),
        warnings=[*strategy_warnings, *executor_warnings, *notes],
    )

