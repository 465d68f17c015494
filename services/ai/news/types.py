# services/ai/news/types.py
"""
Value types for the strategist/executor pipeline.

LLM output is untrusted, so every model here parses leniently:
  - missing or null sub-objects fall back to empty defaults
  - enum strings are normalized (case, spaces/hyphens -> underscores) and
    unknown values become None
  - numeric scores are coerced from strings and clamped to their range
  - list fields accept a bare string or drop non-string junk

Nothing here raises for an inconsistent answer; validation.py reports those
as warnings.
"""
from __future__ import annotations

from typing import Annotated, Any, Callable, Dict, List, Literal, Optional

from pydantic import BeforeValidator, Field, field_validator, model_validator

from schemas.base import CamelModel
from services.fmp.request_types import FmpCollectedPack, FmpDataRequest
from utils.common_helpers import clamp, safe_float

NOT_INVESTMENT_ADVICE = "This is not investment advice"

Classification = Literal["new_information", "confirmation", "narrative_reinforcement", "speculative_signal", "noise"]
Channel = Literal["rates", "risk_premium", "liquidity", "sentiment", "positioning", "fundamentals"]
MechanismDirection = Literal["positive", "negative", "uncertain"]
Magnitude = Literal["negligible", "minor", "moderate", "significant", "major"]
InstrumentType = Literal["equity", "forex", "crypto", "commodity", "index", "bond"]
Incremental = Literal["significantly_above", "above", "inline", "below", "significantly_below"]
Sentiment = Literal["strong_bullish", "bullish", "lean_bullish", "neutral", "lean_bearish", "bearish", "strong_bearish"]
TradeDirection = Literal["long", "short", "neutral"]
TimeHorizon = Literal["immediate", "short_term", "medium_term", "long_term"]
NewsCategory = Literal["macro", "company", "crypto", "geopolitical", "regulatory", "sentiment", "technical"]

BULLISH_SENTIMENTS = frozenset({"strong_bullish", "bullish", "lean_bullish"})
BEARISH_SENTIMENTS = frozenset({"strong_bearish", "bearish", "lean_bearish"})

# common near-misses seen in model output
_ENUM_SYNONYMS = {
    "in_line": "inline",
    "speculative": "speculative_signal",
    "new_info": "new_information",
    "shortterm": "short_term",
    "mediumterm": "medium_term",
    "longterm": "long_term",
    "risk": "risk_premium",
}


# ---------------------------------------------------------------------------
# lenient coercion helpers
# ---------------------------------------------------------------------------

def _enum(allowed: Any) -> Callable[[Any], Optional[str]]:
    values = frozenset(allowed.__args__)

    def coerce(v: Any) -> Optional[str]:
        if v is None:
            return None
        s = str(v).strip().lower().replace("-", "_").replace(" ", "_")
        s = _ENUM_SYNONYMS.get(s, s)
        return s if s in values else None

    return coerce


def _raw_number(v: Any) -> Optional[float]:
    if isinstance(v, str):
        v = v.strip().rstrip("%")
    return safe_float(v)


def _number(lo: float, hi: float, *, unit_interval: bool = False, integer: bool = False) -> Callable[[Any], Optional[float]]:
    def coerce(v: Any) -> Optional[float]:
        f = _raw_number(v)
        if f is None:
            return None
        # a 0-1 field above 1 is a percentage: 85 -> 0.85, 5 -> 0.05
        if unit_interval and f > 1:
            f = f / 100
        f = clamp(f, lo, hi)
        return int(round(f)) if integer else f

    return coerce


def _bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v != 0
    if isinstance(v, str):
        return v.strip().lower() in ("true", "yes", "y", "1")
    return False


def _text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (dict, list)):
        return ""
    return str(v)


def _str_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if not isinstance(v, (list, tuple)):
        return []
    return [str(x) for x in v if isinstance(x, (str, int, float)) and str(x).strip()]


def _dict_list(v: Any) -> List[Any]:
    if isinstance(v, dict):
        return [v]
    if not isinstance(v, (list, tuple)):
        return []
    return [x for x in v if isinstance(x, (dict, CamelModel))]


def _str_map(v: Any) -> Dict[str, str]:
    if not isinstance(v, dict):
        return {}
    return {str(k): _text(val) for k, val in v.items()}


Text = Annotated[str, BeforeValidator(_text)]
StrList = Annotated[List[str], BeforeValidator(_str_list)]
Flag = Annotated[bool, BeforeValidator(_bool)]
UnitScore = Annotated[Optional[float], BeforeValidator(_number(0, 1, unit_interval=True))]
Score10 = Annotated[Optional[int], BeforeValidator(_number(1, 10, integer=True))]
Info10 = Annotated[Optional[float], BeforeValidator(_number(0, 10))]


class LenientModel(CamelModel):
    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, CamelModel):
            return data
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if v is not None}


# ---------------------------------------------------------------------------
# News input
# ---------------------------------------------------------------------------

class NewsInput(CamelModel):
    id: str
    headline: str = ""
    body: str = ""
    source: Optional[str] = None
    published_at: Optional[str] = None
    tickers: StrList = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id_str(cls, v: Any) -> str:
        return str(v)

    @field_validator("body", "headline", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)


# ---------------------------------------------------------------------------
# Strategist output ("the plan")
# ---------------------------------------------------------------------------

class InformationNature(LenientModel):
    classification: Annotated[Optional[Classification], BeforeValidator(_enum(Classification))] = None
    confidence: UnitScore = 0.0
    reasoning: Text = ""


class TransmissionMechanism(LenientModel):
    channel: Annotated[Optional[Channel], BeforeValidator(_enum(Channel))] = None
    direction: Annotated[Optional[MechanismDirection], BeforeValidator(_enum(MechanismDirection))] = None
    magnitude: Annotated[Optional[Magnitude], BeforeValidator(_enum(Magnitude))] = None


class MarketImpactLogic(LenientModel):
    should_move_markets: Flag = False
    reasoning: Text = ""
    challenged_beliefs: StrList = Field(default_factory=list)
    transmission_mechanisms: Annotated[List[TransmissionMechanism], BeforeValidator(_dict_list)] = Field(
        default_factory=list
    )


class MarketPriceRequest(LenientModel):
    symbol: Text = ""
    type: Annotated[Optional[InstrumentType], BeforeValidator(_enum(InstrumentType))] = None
    reason: Text = ""


class TimeWindow(LenientModel):
    period: Text = ""
    reason: Text = ""


class HistoricalComparable(LenientModel):
    event: Text = ""
    date: Text = ""
    relevance: Text = ""
    transferable_lessons: StrList = Field(default_factory=list)
    non_transferable_aspects: StrList = Field(default_factory=list)


class RequiredData(LenientModel):
    market_prices: Annotated[List[MarketPriceRequest], BeforeValidator(_dict_list)] = Field(default_factory=list)
    time_windows: Annotated[List[TimeWindow], BeforeValidator(_dict_list)] = Field(default_factory=list)
    volatility_metrics: StrList = Field(default_factory=list)
    macro_inputs: StrList = Field(default_factory=list)
    positioning_proxies: StrList = Field(default_factory=list)
    historical_comparables: Annotated[List[HistoricalComparable], BeforeValidator(_dict_list)] = Field(
        default_factory=list
    )
    fmp_requests: Annotated[List[FmpDataRequest], BeforeValidator(_dict_list)] = Field(default_factory=list)


class NonReactionConditions(LenientModel):
    conditions: StrList = Field(default_factory=list)
    invalidation_signals: StrList = Field(default_factory=list)


class Horizon(LenientModel):
    relevant: Flag = False
    focus: StrList = Field(default_factory=list)
    timeframe: Text = ""


class LongTermHorizon(Horizon):
    structural_implications: StrList = Field(default_factory=list)


class AnalysisHorizons(LenientModel):
    immediate: Horizon = Field(default_factory=Horizon)
    short_term: Horizon = Field(default_factory=Horizon)
    medium_term: Horizon = Field(default_factory=Horizon)
    long_term: LongTermHorizon = Field(default_factory=LongTermHorizon)


class HistoricalComparisonLogic(LenientModel):
    comparison_needed: Flag = False
    valid_analog_criteria: StrList = Field(default_factory=list)
    invalid_analog_warnings: StrList = Field(default_factory=list)


class CognitiveTraps(LenientModel):
    headline_bias: Text = ""
    confirmation_bias: Text = ""
    priced_in_risk: Text = ""
    reflexive_narrative_risk: Text = ""
    other_traps: StrList = Field(default_factory=list)


class AssetImpactLogic(LenientModel):
    asset: Text = ""
    impact_chain: Text = ""
    confidence: UnitScore = None


class PlannedScenario(LenientModel):
    probability: UnitScore = 0.0
    description: Text = ""
    trigger: Text = ""
    implications: StrList = Field(default_factory=list)


class ScenarioSet(LenientModel):
    """
    base/upside/downside triple whose probabilities share one scale.

    If any of the three is above 1 the whole triple is read as percentages,
    so 70/25/0.5 becomes 0.7/0.25/0.005 rather than mixing scales.
    """

    @model_validator(mode="before")
    @classmethod
    def _shared_percent_scale(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        probs = {
            k: _raw_number(s.get("probability"))
            for k, s in data.items()
            if k in ("base", "upside", "downside") and isinstance(s, dict)
        }
        if not any(p is not None and p > 1 for p in probs.values()):
            return data
        out = dict(data)
        for k, p in probs.items():
            if p is not None:
                out[k] = {**data[k], "probability": p / 100}
        return out


class ScenarioMatrix(ScenarioSet):
    base: PlannedScenario = Field(default_factory=PlannedScenario)
    upside: PlannedScenario = Field(default_factory=PlannedScenario)
    downside: PlannedScenario = Field(default_factory=PlannedScenario)


class OutputDesign(LenientModel):
    executive_summary_focus: Text = ""
    asset_impact_logic: Annotated[List[AssetImpactLogic], BeforeValidator(_dict_list)] = Field(default_factory=list)
    scenario_matrix: ScenarioMatrix = Field(default_factory=ScenarioMatrix)
    key_monitoring_points: StrList = Field(default_factory=list)


class ExecutorInstructions(LenientModel):
    mandatory_tasks: StrList = Field(default_factory=list)
    forbidden_behaviors: StrList = Field(default_factory=list)
    output_constraints: StrList = Field(default_factory=list)
    confidence_floor: UnitScore = 0.0
    absolute_bans: StrList = Field(default_factory=list)

    @model_validator(mode="after")
    def _ensure_not_advice(self) -> "ExecutorInstructions":
        if not any("investment advice" in b.lower() for b in self.absolute_bans):
            self.absolute_bans = [*self.absolute_bans, NOT_INVESTMENT_ADVICE]
        return self


class EpistemicAssessment(LenientModel):
    known: StrList = Field(default_factory=list)
    implied: StrList = Field(default_factory=list)
    unknown: StrList = Field(default_factory=list)
    incremental_info_score: Info10 = None


class StrategistOutput(LenientModel):
    information_nature: InformationNature = Field(default_factory=InformationNature)
    market_impact_logic: MarketImpactLogic = Field(default_factory=MarketImpactLogic)
    required_data: RequiredData = Field(default_factory=RequiredData)
    non_reaction_conditions: NonReactionConditions = Field(default_factory=NonReactionConditions)
    analysis_horizons: AnalysisHorizons = Field(default_factory=AnalysisHorizons)
    historical_comparison_logic: HistoricalComparisonLogic = Field(default_factory=HistoricalComparisonLogic)
    cognitive_traps: CognitiveTraps = Field(default_factory=CognitiveTraps)
    output_design: OutputDesign = Field(default_factory=OutputDesign)
    executor_instructions: ExecutorInstructions = Field(default_factory=ExecutorInstructions)
    epistemic_assessment: EpistemicAssessment = Field(default_factory=EpistemicAssessment)


# ---------------------------------------------------------------------------
# Executor output ("the decision")
# ---------------------------------------------------------------------------

class ExecutiveSummary(LenientModel):
    signal: Text = ""
    incremental_vs_expectations: Annotated[Optional[Incremental], BeforeValidator(_enum(Incremental))] = None
    overall_sentiment: Annotated[Optional[Sentiment], BeforeValidator(_enum(Sentiment))] = None


class AssetImpact(LenientModel):
    asset: Text = ""
    trading_view_symbol: Text = ""
    normalized_symbol: Text = ""
    direction: Annotated[Optional[TradeDirection], BeforeValidator(_enum(TradeDirection))] = None
    conviction: Score10 = None
    time_horizon: Annotated[Optional[TimeHorizon], BeforeValidator(_enum(TimeHorizon))] = None
    rationale: Text = ""
    entry_logic: Text = ""
    invalidation: Text = ""


class ScenarioOutcome(LenientModel):
    probability: UnitScore = 0.0
    description: Text = ""
    trigger: Text = ""
    asset_implications: Annotated[Dict[str, str], BeforeValidator(_str_map)] = Field(default_factory=dict)


class ScenarioAnalysis(ScenarioSet):
    base: ScenarioOutcome = Field(default_factory=ScenarioOutcome)
    upside: ScenarioOutcome = Field(default_factory=ScenarioOutcome)
    downside: ScenarioOutcome = Field(default_factory=ScenarioOutcome)


class PricedInAssessment(LenientModel):
    score: Score10 = None
    reasoning: Text = ""
    market_prior_beliefs: StrList = Field(default_factory=list)


class RisksAndInvalidation(LenientModel):
    key_risks: StrList = Field(default_factory=list)
    invalidation_points: StrList = Field(default_factory=list)
    blind_spots: StrList = Field(default_factory=list)


class Monitoring(LenientModel):
    next_data_points: StrList = Field(default_factory=list)
    trigger_events: StrList = Field(default_factory=list)
    timeframe: Text = ""


class ExecutorConfidence(LenientModel):
    overall: Score10 = None
    data_quality: Score10 = None
    analysis_robustness: Score10 = None
    uncertainty_disclaimer: Text = ""


class AnalysisMeta(LenientModel):
    analysis_timestamp: Text = ""
    news_category: Annotated[Optional[NewsCategory], BeforeValidator(_enum(NewsCategory))] = None
    primary_assets: StrList = Field(default_factory=list)
    secondary_assets: StrList = Field(default_factory=list)


class ExecutorOutput(LenientModel):
    executive_summary: ExecutiveSummary = Field(default_factory=ExecutiveSummary)
    asset_impacts: Annotated[List[AssetImpact], BeforeValidator(_dict_list)] = Field(default_factory=list)
    scenario_analysis: ScenarioAnalysis = Field(default_factory=ScenarioAnalysis)
    priced_in_assessment: PricedInAssessment = Field(default_factory=PricedInAssessment)
    risks_and_invalidation: RisksAndInvalidation = Field(default_factory=RisksAndInvalidation)
    monitoring: Monitoring = Field(default_factory=Monitoring)
    confidence: ExecutorConfidence = Field(default_factory=ExecutorConfidence)
    meta: AnalysisMeta = Field(default_factory=AnalysisMeta)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class QualityMetrics(CamelModel):
    strategist_confidence: float = 0.0
    executor_adherence: float = 0.0
    overall_quality: float = 0.0
    warnings: List[str] = Field(default_factory=list)


class StageTiming(CamelModel):
    strategist_ms: int = 0
    data_fetch_ms: int = 0
    executor_ms: int = 0
    total_ms: int = 0


class PipelineMeta(CamelModel):
    pipeline: str
    model_tier: str
    strategist_model: str
    executor_model: str
    timestamp: str


class AnalysisPipelineResult(CamelModel):
    news_id: str
    strategy: StrategistOutput
    analysis: ExecutorOutput
    market_data: Optional[FmpCollectedPack] = None
    quality_metrics: QualityMetrics
    timing: StageTiming
    meta: PipelineMeta


class BatchStats(CamelModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    failed_ids: List[str] = Field(default_factory=list)
    avg_strategist_ms: float = 0.0
    avg_executor_ms: float = 0.0
    avg_total_ms: float = 0.0
    tradeable: int = 0
    bullish: int = 0
    bearish: int = 0
    neutral: int = 0
    high_confidence: int = 0
    low_incremental_info: int = 0


class BatchMeta(CamelModel):
    pipeline: str
    model_tier: str
    timestamp: str


class BatchAnalysisResult(CamelModel):
    results: List[AnalysisPipelineResult] = Field(default_factory=list)
    stats: BatchStats = Field(default_factory=BatchStats)
    meta: BatchMeta
