# services/ai/news/prompts.py
"""
Prompt text for both pipeline stages.

The headline is never rendered into any prompt: builders here only take the
body and metadata of a NewsInput.
"""
from __future__ import annotations

import json
from typing import Iterable, List, Optional

from services.ai.news.types import Horizon, NewsInput, StrategistOutput
from services.fmp.data_executor import FMP_DATA_MENU
from services.fmp.request_types import FmpCollectedPack

MARKET_DATA_CHAR_LIMIT = 12000

_RULE = "=" * 72


def _section(title: str, body: str) -> str:
    return f"{_RULE}\n{title}\n{_RULE}\n\n{body.strip() or '(none)'}\n"


def _bullets(items: Iterable[str], mark: str = "-") -> str:
    return "\n".join(f"{mark} {x}" for x in items)


def _pct(x: Optional[float]) -> str:
    return f"{(x or 0.0) * 100:.0f}%"


STRATEGIST_SCHEMA = """{
  "informationNature": {
    "classification": "new_information|confirmation|narrative_reinforcement|speculative_signal|noise",
    "confidence": 0.0-1.0,
    "reasoning": "string"
  },
  "marketImpactLogic": {
    "shouldMoveMarkets": boolean,
    "reasoning": "string",
    "challengedBeliefs": ["string"],
    "transmissionMechanisms": [
      {"channel": "rates|risk_premium|liquidity|sentiment|positioning|fundamentals",
       "direction": "positive|negative|uncertain",
       "magnitude": "negligible|minor|moderate|significant|major"}
    ]
  },
  "requiredData": {
    "marketPrices": [{"symbol": "EXCHANGE:SYMBOL", "type": "equity|forex|crypto|commodity|index|bond", "reason": "string"}],
    "timeWindows": [{"period": "string", "reason": "string"}],
    "volatilityMetrics": ["string"],
    "macroInputs": ["string"],
    "positioningProxies": ["string"],
    "historicalComparables": [
      {"event": "string", "date": "string", "relevance": "string",
       "transferableLessons": ["string"], "nonTransferableAspects": ["string"]}
    ],
    "fmpRequests": [{"type": "quote", "symbols": ["AAPL"], "params": {}}]
  },
  "nonReactionConditions": {"conditions": ["string"], "invalidationSignals": ["string"]},
  "analysisHorizons": {
    "immediate": {"relevant": boolean, "focus": ["string"], "timeframe": "string"},
    "shortTerm": {"relevant": boolean, "focus": ["string"], "timeframe": "string"},
    "mediumTerm": {"relevant": boolean, "focus": ["string"], "timeframe": "string"},
    "longTerm": {"relevant": boolean, "focus": ["string"], "timeframe": "string", "structuralImplications": ["string"]}
  },
  "historicalComparisonLogic": {"comparisonNeeded": boolean, "validAnalogCriteria": ["string"], "invalidAnalogWarnings": ["string"]},
  "cognitiveTraps": {"headlineBias": "string", "confirmationBias": "string", "pricedInRisk": "string",
                     "reflexiveNarrativeRisk": "string", "otherTraps": ["string"]},
  "outputDesign": {
    "executiveSummaryFocus": "string",
    "assetImpactLogic": [{"asset": "string", "impactChain": "string", "confidence": 0.0-1.0}],
    "scenarioMatrix": {
      "base": {"probability": 0.0-1.0, "description": "string", "implications": ["string"]},
      "upside": {"probability": 0.0-1.0, "trigger": "string", "implications": ["string"]},
      "downside": {"probability": 0.0-1.0, "trigger": "string", "implications": ["string"]}
    },
    "keyMonitoringPoints": ["string"]
  },
  "executorInstructions": {
    "mandatoryTasks": ["string"],
    "forbiddenBehaviors": ["string"],
    "outputConstraints": ["string"],
    "confidenceFloor": 0.0-1.0,
    "absoluteBans": ["This is not investment advice", "No buy/sell recommendations"]
  },
  "epistemicAssessment": {"known": ["string"], "implied": ["string"], "unknown": ["string"], "incrementalInfoScore": 0-10}
}"""


STRATEGIST_SYSTEM_PROMPT = f"""You are an institutional financial analysis strategist.

HARD RULE: no headline is provided and you must not reconstruct one. Work only
from the body text. Treat any framing as possibly misleading or exaggerated.

You do not analyze the news. You design the analysis framework that a second
model will execute, and you are accountable for epistemic discipline: no false
certainty, explicit uncertainty, and an honest verdict on whether this item
changes what the market knows.

Before designing, separate what is KNOWN from the text, what is IMPLIED but
uncertain, and what is UNKNOWN. If the incremental information is low, say so.

Design:
1. The informational nature of the item (new information, confirmation of
   expectations, narrative reinforcement, speculative signal, noise).
2. Whether and why it should move markets: the beliefs it challenges and the
   transmission channels (rates, risk premium, liquidity, sentiment,
   positioning, fundamentals).
3. All data the analysis needs: prices, time windows, volatility and
   positioning proxies, macro inputs, justified historical comparables (always
   list transferable and non-transferable lessons, even if empty).
4. When NOT to overreact, and which signals would invalidate a first reaction.
5. Horizons: immediate, short term, medium term, and long term only when
   structurally relevant.
6. Historical comparison logic: whether needed and what makes an analog valid.
7. Cognitive traps: headline bias, confirmation bias, priced-in risk,
   reflexive narratives.
8. The final output design, including a base/upside/downside scenario matrix
   whose probabilities sum to 1.
9. Strict executor instructions: mandatory tasks, forbidden behaviors, output
   constraints, a confidence floor, and absolute bans that always include
   "This is not investment advice".

If the item is noise or a confirmation of what was already expected,
shouldMoveMarkets must be false and the plan must keep the executor from
asserting high conviction.

{FMP_DATA_MENU}

Output rules: valid JSON only, no commentary outside the JSON object.

REQUIRED OUTPUT SCHEMA:
{STRATEGIST_SCHEMA}"""


EXECUTOR_SCHEMA = """{
  "executiveSummary": {
    "signal": "one sentence",
    "incrementalVsExpectations": "significantly_above|above|inline|below|significantly_below",
    "overallSentiment": "strong_bullish|bullish|lean_bullish|neutral|lean_bearish|bearish|strong_bearish"
  },
  "assetImpacts": [
    {"asset": "string", "tradingViewSymbol": "EXCHANGE:SYMBOL", "direction": "long|short|neutral",
     "conviction": 1-10, "timeHorizon": "immediate|short_term|medium_term|long_term",
     "rationale": "string", "entryLogic": "string", "invalidation": "string"}
  ],
  "scenarioAnalysis": {
    "base": {"probability": 0.0-1.0, "description": "string", "assetImplications": {"ASSET": "string"}},
    "upside": {"probability": 0.0-1.0, "trigger": "string", "assetImplications": {"ASSET": "string"}},
    "downside": {"probability": 0.0-1.0, "trigger": "string", "assetImplications": {"ASSET": "string"}}
  },
  "pricedInAssessment": {"score": 1-10, "reasoning": "string", "marketPriorBeliefs": ["string"]},
  "risksAndInvalidation": {"keyRisks": ["string"], "invalidationPoints": ["string"], "blindSpots": ["string"]},
  "monitoring": {"nextDataPoints": ["string"], "triggerEvents": ["string"], "timeframe": "string"},
  "confidence": {"overall": 1-10, "dataQuality": 1-10, "analysisRobustness": 1-10, "uncertaintyDisclaimer": "string"},
  "meta": {"analysisTimestamp": "ISO timestamp",
           "newsCategory": "macro|company|crypto|geopolitical|regulatory|sentiment|technical",
           "primaryAssets": ["string"], "secondaryAssets": ["string"]}
}"""


def _horizon(label: str, h: Horizon, not_relevant: str = "not relevant") -> str:
    if not h.relevant:
        return f"{label}: {not_relevant}"
    out = f"{label} ({h.timeframe or 'unspecified'}):\n{_bullets(h.focus, '  -')}"
    implications = getattr(h, "structural_implications", None)
    if implications:
        out += f"\n  Structural: {', '.join(implications)}"
    return out


def build_executor_prompt(strategy: StrategistOutput) -> str:
    """System prompt that binds the executor to the strategist's plan."""
    ins = strategy.executor_instructions
    nature = strategy.information_nature
    impact = strategy.market_impact_logic
    hz = strategy.analysis_horizons
    traps = strategy.cognitive_traps
    hist = strategy.historical_comparison_logic
    epi = strategy.epistemic_assessment
    matrix = strategy.output_design.scenario_matrix

    sections: List[str] = [
        "You are a precision financial analyst executing a pre-designed analysis framework.\n",
        _section("ABSOLUTE CONSTRAINTS (violation = failure)", _bullets(ins.absolute_bans, "X")),
        _section("MANDATORY TASKS", "\n".join(f"{i}. {t}" for i, t in enumerate(ins.mandatory_tasks, 1))),
        _section("FORBIDDEN BEHAVIORS", _bullets(ins.forbidden_behaviors)),
        _section(
            "INFORMATION CLASSIFICATION (from strategist)",
            f"Classification: {nature.classification or 'unclassified'}\n"
            f"Confidence: {_pct(nature.confidence)}\n"
            f"Reasoning: {nature.reasoning}",
        ),
        _section(
            "MARKET IMPACT LOGIC",
            f"Should move markets: {'YES' if impact.should_move_markets else 'NO'}\n"
            f"Reasoning: {impact.reasoning}\n\n"
            f"Challenged beliefs:\n{_bullets(impact.challenged_beliefs)}\n\n"
            "Transmission mechanisms:\n"
            + _bullets(f"{m.channel}: {m.direction} ({m.magnitude})" for m in impact.transmission_mechanisms),
        ),
        _section(
            "ASSETS TO ANALYZE",
            _bullets(f"{p.symbol} ({p.type or 'unknown'}): {p.reason}" for p in strategy.required_data.market_prices)
            + ("\n\nImpact logic:\n" + _bullets(
                f"{a.asset}: {a.impact_chain}" for a in strategy.output_design.asset_impact_logic
            ) if strategy.output_design.asset_impact_logic else ""),
        ),
        _section(
            "TIME HORIZONS",
            "\n\n".join([
                _horizon("IMMEDIATE", hz.immediate),
                _horizon("SHORT-TERM", hz.short_term),
                _horizon("MEDIUM-TERM", hz.medium_term),
                _horizon("LONG-TERM", hz.long_term, "not structurally relevant"),
            ]),
        ),
        _section(
            "COGNITIVE TRAPS TO AVOID",
            f"- HEADLINE BIAS: {traps.headline_bias}\n"
            f"- CONFIRMATION BIAS: {traps.confirmation_bias}\n"
            f"- PRICED-IN RISK: {traps.priced_in_risk}\n"
            f"- REFLEXIVE NARRATIVE: {traps.reflexive_narrative_risk}\n"
            + _bullets(f"OTHER: {t}" for t in traps.other_traps),
        ),
        _section(
            "WHEN NOT TO OVERREACT",
            f"Conditions for limited/no impact:\n{_bullets(strategy.non_reaction_conditions.conditions)}\n\n"
            f"Invalidation signals:\n{_bullets(strategy.non_reaction_conditions.invalidation_signals)}",
        ),
    ]

    if hist.comparison_needed:
        comparables = "\n\n".join(
            f"- {h.event} ({h.date}): {h.relevance}\n"
            f"    Transferable: {', '.join(h.transferable_lessons) or '-'}\n"
            f"    Non-transferable: {', '.join(h.non_transferable_aspects) or '-'}"
            for h in strategy.required_data.historical_comparables
        )
        history = (
            f"Valid analog criteria:\n{_bullets(hist.valid_analog_criteria)}\n\n"
            f"Invalid analog warnings:\n{_bullets(hist.invalid_analog_warnings, '!')}\n\n"
            f"Historical comparables:\n{comparables}"
        )
    else:
        history = "No historical comparison required."
    sections.append(_section("HISTORICAL CONTEXT", history))

    score = epi.incremental_info_score
    sections.append(_section(
        "EPISTEMIC STATUS",
        f"KNOWN:\n{_bullets(epi.known, '+')}\n\n"
        f"IMPLIED (uncertain):\n{_bullets(epi.implied, '?')}\n\n"
        f"UNKNOWN:\n{_bullets(epi.unknown, 'x')}\n\n"
        f"Incremental information score: {score if score is not None else 'n/a'}/10",
    ))
    sections.append(_section(
        "SCENARIO MATRIX (must follow)",
        f"BASE ({_pct(matrix.base.probability)}): {matrix.base.description}\n"
        f"Implications: {'; '.join(matrix.base.implications)}\n\n"
        f"UPSIDE ({_pct(matrix.upside.probability)}): trigger: {matrix.upside.trigger}\n"
        f"Implications: {'; '.join(matrix.upside.implications)}\n\n"
        f"DOWNSIDE ({_pct(matrix.downside.probability)}): trigger: {matrix.downside.trigger}\n"
        f"Implications: {'; '.join(matrix.downside.implications)}",
    ))
    sections.append(_section(
        "OUTPUT CONSTRAINTS",
        f"{_bullets(ins.output_constraints)}\n\nMinimum confidence to assert: {_pct(ins.confidence_floor)}\n"
        "Scenario probabilities must sum to 1.0. Use the collected market data when present; "
        "do not invent prices.",
    ))
    sections.append(_section("OUTPUT FORMAT (JSON only)", EXECUTOR_SCHEMA))
    return "\n".join(sections)


def build_strategist_user_content(news: NewsInput, market_context: str = "") -> str:
    parts: List[str] = []
    if market_context:
        parts.append(market_context)
    parts.append(_section("NEWS CONTENT (body only)", news.body))
    meta: List[str] = []
    if news.source:
        meta.append(f"Source: {news.source}")
    if news.published_at:
        meta.append(f"Published: {news.published_at}")
    if news.tickers:
        meta.append(f"Related tickers: {', '.join(news.tickers)}")
    if meta:
        parts.append("\n".join(meta))
    return "\n\n".join(parts)


def format_market_data(pack: Optional[FmpCollectedPack], limit: int = MARKET_DATA_CHAR_LIMIT) -> str:
    if pack is None or (not pack.by_type and not pack.errors):
        return ""
    body = json.dumps(pack.by_type, default=str, separators=(",", ":"))
    if len(body) > limit:
        body = body[:limit] + "...(truncated)"
    text = f"Collected at {pack.generated_at}\n{body}"
    if pack.errors:
        text += f"\n\nUnavailable:\n{_bullets(pack.errors)}"
    return _section("COLLECTED MARKET DATA", text)


def build_executor_user_content(
    news: NewsInput,
    market_context: str = "",
    market_data: Optional[FmpCollectedPack] = None,
) -> str:
    parts: List[str] = []
    if market_context:
        parts.append(market_context)
    parts.append(_section("NEWS CONTENT TO ANALYZE", news.body))
    data = format_market_data(market_data)
    if data:
        parts.append(data)
    return "\n\n".join(parts)
