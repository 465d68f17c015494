# services/ai/news/news_batch.py
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from services.ai.llm_service import LLMService
from services.ai.news.news_pipeline import PIPELINE_NAME, AnalysisOptions, analyze_news
from services.ai.news.types import (
    BEARISH_SENTIMENTS,
    BULLISH_SENTIMENTS,
    AnalysisPipelineResult,
    BatchAnalysisResult,
    BatchMeta,
    BatchStats,
    NewsInput,
)
from services.fmp.fmp_client import FmpClient
from services.market.market_context import fetch_market_context
from utils.common_helpers import elapsed_ms, iso_now

logger = logging.getLogger(__name__)

NewsLike = Union[NewsInput, Dict[str, Any]]

TRADEABLE_MIN_CONVICTION = 6
HIGH_CONFIDENCE_MIN = 7
LOW_INCREMENTAL_INFO_MAX = 3


def _item_id(item: NewsLike, index: int) -> str:
    if isinstance(item, NewsInput):
        return item.id
    if isinstance(item, dict) and item.get("id") is not None:
        return str(item["id"])
    return f"#{index}"


def _avg(values: List[int]) -> float:
    return round(sum(values) / len(values), 1) if values else 0.0


def compute_batch_stats(results: List[AnalysisPipelineResult], total: int, failed_ids: List[str]) -> BatchStats:
    def tradeable(r: AnalysisPipelineResult) -> bool:
        return any(
            a.direction is not None and a.direction != "neutral"
            and (a.conviction or 0) >= TRADEABLE_MIN_CONVICTION
            for a in r.analysis.asset_impacts
        )

    sentiments = [r.analysis.executive_summary.overall_sentiment for r in results]
    return BatchStats(
        total=total,
        successful=len(results),
        failed=len(failed_ids),
        failed_ids=list(failed_ids),
        avg_strategist_ms=_avg([r.timing.strategist_ms for r in results]),
        avg_executor_ms=_avg([r.timing.executor_ms for r in results]),
        avg_total_ms=_avg([r.timing.total_ms for r in results]),
        tradeable=sum(1 for r in results if tradeable(r)),
        bullish=sum(1 for s in sentiments if s in BULLISH_SENTIMENTS),
        bearish=sum(1 for s in sentiments if s in BEARISH_SENTIMENTS),
        neutral=sum(1 for s in sentiments if s == "neutral"),
        high_confidence=sum(1 for r in results if (r.analysis.confidence.overall or 0) >= HIGH_CONFIDENCE_MIN),
        low_incremental_info=sum(
            1 for r in results
            if r.strategy.epistemic_assessment.incremental_info_score is not None
            and r.strategy.epistemic_assessment.incremental_info_score <= LOW_INCREMENTAL_INFO_MAX
        ),
    )


async def analyze_news_batch(
    items: Sequence[NewsLike],
    options: Optional[AnalysisOptions] = None,
    max_concurrency: int = 1,
    *,
    llm: Optional[LLMService] = None,
    fmp_client: Optional[FmpClient] = None,
) -> BatchAnalysisResult:
    """
    Run the pipeline over many items; one item's failure never aborts the batch.

    Sequential by default to stay inside per-call LLM rate limits.
    ``max_concurrency > 1`` runs a bounded variant that keeps input order.
    Market context is fetched once and shared by every item.
    """
    t0 = time.perf_counter()
    opts = options or AnalysisOptions()
    if opts.include_market_context and opts.market_context is None:
        opts = dataclasses.replace(opts, market_context=await fetch_market_context())

    async def one(index: int, item: NewsLike) -> Tuple[str, Optional[AnalysisPipelineResult]]:
        news_id = _item_id(item, index)
        try:
            return news_id, await analyze_news(item, opts, llm=llm, fmp_client=fmp_client)
        except Exception:
            logger.exception("news analysis failed news_id=%s", news_id)
            return news_id, None

    if max_concurrency <= 1:
        outcomes = [await one(i, item) for i, item in enumerate(items)]
    else:
        sem = asyncio.Semaphore(max_concurrency)

        async def bounded(index: int, item: NewsLike) -> Tuple[str, Optional[AnalysisPipelineResult]]:
            async with sem:
                return await one(index, item)

        outcomes = await asyncio.gather(*(bounded(i, item) for i, item in enumerate(items)))

    results = [r for _, r in outcomes if r is not None]
    failed_ids = [news_id for news_id, r in outcomes if r is None]
    stats = compute_batch_stats(results, len(items), failed_ids)
    logger.info(
        "batch done total=%d ok=%d failed=%d ms=%d",
        stats.total, stats.successful, stats.failed, elapsed_ms(t0),
    )
    return BatchAnalysisResult(
        results=results,
        stats=stats,
        meta=BatchMeta(pipeline=PIPELINE_NAME, model_tier=opts.model_tier, timestamp=iso_now()),
    )
