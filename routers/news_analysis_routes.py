# routers/news_analysis_routes.py
import asyncio
import logging

from fastapi import APIRouter, HTTPException

from schemas.news_analysis import AnalyzeBatchRequest, AnalyzeNewsRequest, FmpDataRequestBody
from services.ai.news.errors import NewsInputError, UpstreamParseError
from services.ai.news.news_batch import analyze_news_batch
from services.ai.news.news_pipeline import analyze_news
from services.fmp.data_executor import execute_fmp_requests
from services.http.retry_client import RateLimitError
from services.market.market_context import fetch_market_context

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/analyze")
async def analyze_endpoint(req: AnalyzeNewsRequest):
    try:
        result = await analyze_news(req.news, req.options.to_options())
    except NewsInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamParseError as e:
        raise HTTPException(status_code=502, detail={"message": str(e), "stage": e.stage})
    except RateLimitError as e:
        headers = {"Retry-After": str(int(e.retry_after_s))} if e.retry_after_s else None
        raise HTTPException(status_code=429, detail="Upstream rate limit exceeded", headers=headers)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Analysis timed out")
    return result.to_wire()


@router.post("/batch")
async def batch_endpoint(req: AnalyzeBatchRequest):
    if not req.items:
        raise HTTPException(status_code=400, detail="items is required")
    result = await analyze_news_batch(
        req.items,
        req.options.to_options(),
        max_concurrency=req.max_concurrency,
    )
    return result.to_wire()


@router.post("/fmp-data")
async def fmp_data_endpoint(req: FmpDataRequestBody):
    pack = await execute_fmp_requests(
        req.requests,
        allowed_symbols=req.allowed_symbols,
        reference_date=req.reference_date,
    )
    return pack.to_wire()


@router.get("/market-context")
async def market_context_endpoint():
    ctx = await fetch_market_context()
    return ctx.to_wire()
