# services/ai/news/news_pipeline.py
"""
Two-stage news analysis: strategist designs the plan, executor fills it in.

    news body -> market context -> strategist (plan) -> data requests
              -> executor (decision) -> guardrail -> validation -> quality

The headline never reaches a prompt. LLM output is parsed leniently;
only a response that is not a JSON object fails the item.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from services.ai.llm_service import LLMService, get_llm_service
from services.ai.news.errors import NewsInputError, UpstreamParseError
from services.ai.news.model_tiers import DEFAULT_TIER, ModelConfig, normalize_tier, resolve_model_config
from services.ai.news.prompts import (
    STRATEGIST_SYSTEM_PROMPT,
    build_executor_prompt,
    build_executor_user_content,
    build_strategist_user_content,
)
from services.ai.news.types import (
    AnalysisPipelineResult,
    ExecutorOutput,
    NewsInput,
    PipelineMeta,
    StageTiming,
    StrategistOutput,
)
from services.ai.news.validation import (
    QualityWeights,
    ValidationThresholds,
    apply_conviction_guardrail,
    compute_quality,
    enrich_asset_symbols,
    validate_executor,
    validate_strategy,
)
from services.fmp.data_executor import execute_fmp_requests
from services.fmp.fmp_client import FmpClient
from services.fmp.request_types import FmpCollectedPack, FmpDataRequest
from services.http.retry_client import deadline_scope
from services.market.market_context import MarketContext, fetch_market_context, format_market_context
from services.market.symbols import normalize_symbols
from utils.common_helpers import elapsed_ms, iso_now, parse_json_strict

logger = logging.getLogger(__name__)

PIPELINE_NAME = "meta-prompting-v2"
QUOTE_TYPES = frozenset({"quote", "batch_quote", "comprehensive_company"})


@dataclass(frozen=True)
class AnalysisOptions:
    model_tier: str = DEFAULT_TIER
    include_market_context: bool = True
    skip_executor: bool = False  # strategist only, for debugging the plan
    fetch_market_data: bool = True
    restrict_to_named_symbols: bool = True
    market_context: Optional[MarketContext] = None
    timeout_s: Optional[float] = None


async def _call_stage(
    llm: LLMService,
    stage: str,
    *,
    system: str,
    user: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> Dict[str, Any]:
    raw = await llm.generate_json(
        system=system,
        user=user,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    try:
        return parse_json_strict(raw)
    except ValueError as e:
        logger.warning("%s returned unparseable output: %s", stage, e)
        raise UpstreamParseError(stage, raw, str(e)) from e


def _named_symbols(strategy: StrategistOutput, news: NewsInput) -> List[str]:
    names = [p.symbol for p in strategy.required_data.market_prices]
    names += [a.asset for a in strategy.output_design.asset_impact_logic]
    names += list(news.tickers)
    return normalize_symbols(n for n in names if n)


def data_requests_for(strategy: StrategistOutput) -> List[FmpDataRequest]:
    """The plan's explicit requests, plus a quote request when prices were listed but not asked for."""
    requests = list(strategy.required_data.fmp_requests)
    priced = [p.symbol for p in strategy.required_data.market_prices if p.symbol]
    if priced and not any(r.type in QUOTE_TYPES for r in requests):
        requests.append(FmpDataRequest(type="quote", symbols=priced))
    return requests


async def _collect_market_data(
    strategy: StrategistOutput,
    news: NewsInput,
    opts: AnalysisOptions,
    fmp_client: Optional[FmpClient],
) -> Optional[FmpCollectedPack]:
    requests = data_requests_for(strategy)
    if not requests:
        return None
    allowed = _named_symbols(strategy, news) if opts.restrict_to_named_symbols else None
    return await execute_fmp_requests(
        requests,
        allowed_symbols=allowed,
        reference_date=news.published_at,
        client=fmp_client,
    )


async def _run(
    news: NewsInput,
    opts: AnalysisOptions,
    tier: str,
    llm: LLMService,
    fmp_client: Optional[FmpClient],
    weights: QualityWeights,
    thresholds: ValidationThresholds,
) -> AnalysisPipelineResult:
    t0 = time.perf_counter()
    models: ModelConfig = resolve_model_config(tier, llm.provider)

    ctx_text = ""
    if opts.include_market_context:
        ctx = opts.market_context or await fetch_market_context()
        ctx_text = format_market_context(ctx)

    # ---- stage 1: strategist ----
    logger.info("strategist start news_id=%s tier=%s model=%s", news.id, tier, models.strategist)
    t_strat = time.perf_counter()
    data = await _call_stage(
        llm,
        "strategist",
        system=STRATEGIST_SYSTEM_PROMPT,
        user=build_strategist_user_content(news, ctx_text),
        model=models.strategist,
        temperature=models.strategist_temp,
        max_tokens=models.strategist_max_tokens,
    )
    try:
        strategy = StrategistOutput.model_validate(data)
    except ValidationError as e:
        raise UpstreamParseError("strategist", str(data), str(e)) from e
    strategist_ms = elapsed_ms(t_strat)
    strategy_warnings = validate_strategy(strategy, thresholds)
    logger.info(
        "strategist done news_id=%s ms=%d classification=%s warnings=%d",
        news.id, strategist_ms, strategy.information_nature.classification, len(strategy_warnings),
    )

    meta = PipelineMeta(
        pipeline=PIPELINE_NAME,
        model_tier=tier,
        strategist_model=models.strategist,
        executor_model="" if opts.skip_executor else models.executor,
        timestamp=iso_now(),
    )

    if opts.skip_executor:
        return AnalysisPipelineResult(
            news_id=news.id,
            strategy=strategy,
            analysis=ExecutorOutput(),
            quality_metrics=compute_quality(strategy, None, strategy_warnings, [], weights),
            timing=StageTiming(strategist_ms=strategist_ms, total_ms=elapsed_ms(t0)),
            meta=meta,
        )

    # ---- data requests ----
    market_data: Optional[FmpCollectedPack] = None
    data_fetch_ms = 0
    if opts.fetch_market_data:
        t_data = time.perf_counter()
        market_data = await _collect_market_data(strategy, news, opts, fmp_client)
        data_fetch_ms = elapsed_ms(t_data)
        if market_data is not None:
            logger.info(
                "market data news_id=%s requests=%d ok=%d errors=%d ms=%d",
                news.id, market_data.request_count, market_data.success_count,
                len(market_data.errors), data_fetch_ms,
            )

    # ---- stage 2: executor ----
    logger.info("executor start news_id=%s model=%s", news.id, models.executor)
    t_exec = time.perf_counter()
    data = await _call_stage(
        llm,
        "executor",
        system=build_executor_prompt(strategy),
        user=build_executor_user_content(news, ctx_text, market_data),
        model=models.executor,
        temperature=models.executor_temp,
        max_tokens=models.executor_max_tokens,
    )
    try:
        analysis = ExecutorOutput.model_validate(data)
    except ValidationError as e:
        raise UpstreamParseError("executor", str(data), str(e)) from e
    executor_ms = elapsed_ms(t_exec)

    analysis = enrich_asset_symbols(analysis)
    analysis, guardrail_warnings = apply_conviction_guardrail(analysis, strategy, thresholds)
    executor_warnings = validate_executor(analysis, strategy, thresholds)
    quality = compute_quality(
        strategy, analysis, strategy_warnings, executor_warnings, weights, notes=guardrail_warnings
    )

    total_ms = elapsed_ms(t0)
    logger.info(
        "analysis done news_id=%s quality=%.2f warnings=%d total_ms=%d",
        news.id, quality.overall_quality, len(quality.warnings), total_ms,
    )
    return AnalysisPipelineResult(
        news_id=news.id,
        strategy=strategy,
        analysis=analysis,
        market_data=market_data,
        quality_metrics=quality,
        timing=StageTiming(
            strategist_ms=strategist_ms,
            data_fetch_ms=data_fetch_ms,
            executor_ms=executor_ms,
            total_ms=total_ms,
        ),
        meta=meta,
    )


async def analyze_news(
    news: Union[NewsInput, Dict[str, Any]],
    options: Optional[AnalysisOptions] = None,
    *,
    llm: Optional[LLMService] = None,
    fmp_client: Optional[FmpClient] = None,
    weights: Optional[QualityWeights] = None,
    thresholds: Optional[ValidationThresholds] = None,
) -> AnalysisPipelineResult:
    """
    Analyze one news item.

    Raises NewsInputError before any network call when the body is blank or
    the tier is unknown, UpstreamParseError when a stage answers with
    something that is not a JSON object, and asyncio.TimeoutError when
    ``options.timeout_s`` elapses.
    """
    opts = options or AnalysisOptions()
    try:
        item = news if isinstance(news, NewsInput) else NewsInput.model_validate(news)
    except ValidationError as e:
        raise NewsInputError(f"Invalid news item: {e.errors()[0].get('msg', 'validation error')}") from e

    if not item.body.strip():
        raise NewsInputError(f"News body is required (headline is never analyzed): {item.id}")
    try:
        tier = normalize_tier(opts.model_tier)
    except ValueError as e:
        raise NewsInputError(str(e)) from e

    service = llm or get_llm_service()
    run = _run(
        item,
        opts,
        tier,
        service,
        fmp_client,
        weights or QualityWeights.from_env(),
        thresholds or ValidationThresholds.from_env(),
    )
    if opts.timeout_s is None:
        return await run
    with deadline_scope(opts.timeout_s):
        return await asyncio.wait_for(run, timeout=opts.timeout_s)
