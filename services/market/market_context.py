# services/market/market_context.py
"""
Shared market snapshot fed to both LLM stages.

Four independent sub-fetches run concurrently. Each one fails soft to a
neutral default and records its name in ``degraded`` so callers can tell a
real "Neutral" reading from a fallback.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Optional, Tuple

import httpx
from pydantic import Field

from schemas.base import FrozenCamelModel
from services.fmp.fmp_client import FmpClient, FmpServiceError
from services.http.retry_client import RateLimitError, RetryPolicy, SleepFn, request_with_retry
from utils.common_helpers import clamp, elapsed_ms, iso_now, safe_float, safe_json

logger = logging.getLogger(__name__)

FEAR_GREED_URL = "https://api.alternative.me/fng/?limit=1"
BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/24hr"
REFERENCE_PAIR = "BTCUSDT"
VOLATILITY_INDEX_SYMBOL = "^VIX"
DOLLAR_INDEX_SYMBOL = "DXUSD"

# context is a nice-to-have; don't let it hold the pipeline for long
CONTEXT_RETRY_POLICY = RetryPolicy(max_retries=1, initial_backoff_ms=500)
CONTEXT_TIMEOUT_S = 8.0


class FearGreed(FrozenCamelModel):
    value: int = 50
    label: str = "Neutral"


class ReferenceAsset(FrozenCamelModel):
    symbol: str = "BTC"
    price: float = 0.0
    change_24h_percent: float = Field(default=0.0, alias="change24hPercent")


class MarketContext(FrozenCamelModel):
    fear_greed: FearGreed = Field(default_factory=FearGreed)
    reference_asset: ReferenceAsset = Field(default_factory=ReferenceAsset)
    volatility_index: Optional[float] = None
    dollar_index: Optional[float] = None
    timestamp: str = Field(default_factory=iso_now)
    degraded: Tuple[str, ...] = ()


_SOFT_ERRORS = (httpx.HTTPError, RateLimitError, FmpServiceError, ValueError, KeyError, TypeError, IndexError,
                AttributeError)


async def _fetch_fear_greed(http: httpx.AsyncClient, sleep: SleepFn) -> FearGreed:
    r = await request_with_retry(http, "GET", FEAR_GREED_URL, policy=CONTEXT_RETRY_POLICY, sleep=sleep)
    r.raise_for_status()
    data = safe_json(r) or {}
    row = (data.get("data") or [])[0]
    value = safe_float(row.get("value"))
    if value is None:
        raise ValueError("fear & greed value missing")
    return FearGreed(
        value=int(clamp(value, 0, 100)),
        label=str(row.get("value_classification") or "Neutral"),
    )


async def _fetch_reference_asset(http: httpx.AsyncClient, sleep: SleepFn) -> ReferenceAsset:
    r = await request_with_retry(
        http, "GET", BINANCE_TICKER_URL,
        params={"symbol": REFERENCE_PAIR},
        policy=CONTEXT_RETRY_POLICY,
        sleep=sleep,
    )
    r.raise_for_status()
    data = safe_json(r) or {}
    price = safe_float(data.get("lastPrice"))
    if price is None:
        raise ValueError("ticker lastPrice missing")
    return ReferenceAsset(
        symbol="BTC",
        price=price,
        change_24h_percent=safe_float(data.get("priceChangePercent")) or 0.0,
    )


async def _fetch_index_level(fmp: FmpClient, symbol: str) -> float:
    row = await fmp.get_quote(symbol)
    price = safe_float((row or {}).get("price"))
    if price is None:
        raise ValueError(f"no quote for {symbol}")
    return price


async def fetch_market_context(
    http: Optional[httpx.AsyncClient] = None,
    fmp: Optional[FmpClient] = None,
    *,
    sleep: SleepFn = asyncio.sleep,
) -> MarketContext:
    """Never raises for upstream failures; cancellation still propagates."""
    t0 = time.perf_counter()
    fmp_client = fmp or FmpClient(retry_policy=CONTEXT_RETRY_POLICY, sleep=sleep)

    async def run(http_client: httpx.AsyncClient) -> List[Any]:
        async with fmp_client.session() as fs:
            return await asyncio.gather(
                _fetch_fear_greed(http_client, sleep),
                _fetch_reference_asset(http_client, sleep),
                _fetch_index_level(fs, VOLATILITY_INDEX_SYMBOL),
                _fetch_index_level(fs, DOLLAR_INDEX_SYMBOL),
                return_exceptions=True,
            )

    if http is not None:
        results = await run(http)
    else:
        async with httpx.AsyncClient(timeout=CONTEXT_TIMEOUT_S) as c:
            results = await run(c)

    names = ("fearGreed", "referenceAsset", "volatilityIndex", "dollarIndex")
    degraded: List[str] = []
    values: List[Any] = []
    for name, res in zip(names, results):
        if isinstance(res, asyncio.CancelledError):
            raise res
        if isinstance(res, BaseException):
            if not isinstance(res, _SOFT_ERRORS):
                logger.error("market context %s failed unexpectedly", name, exc_info=res)
            else:
                logger.warning("market context %s degraded: %s", name, res)
            degraded.append(name)
            values.append(None)
        else:
            values.append(res)

    fear_greed, reference, vol, dollar = values
    ctx = MarketContext(
        fear_greed=fear_greed or FearGreed(),
        reference_asset=reference or ReferenceAsset(),
        volatility_index=vol,
        dollar_index=dollar,
        degraded=tuple(degraded),
    )
    logger.info("market context ready ms=%d degraded=%s", elapsed_ms(t0), ",".join(degraded) or "-")
    return ctx


def _fmt_price(v: float) -> str:
    return f"{v:,.2f}" if v else "n/a"


def format_market_context(ctx: Optional[MarketContext]) -> str:
    if ctx is None:
        return ""
    chg = ctx.reference_asset.change_24h_percent
    lines = [
        f"CURRENT MARKET CONTEXT ({ctx.timestamp})",
        f"- Fear & Greed Index: {ctx.fear_greed.value} ({ctx.fear_greed.label})",
        f"- {ctx.reference_asset.symbol}: ${_fmt_price(ctx.reference_asset.price)} ({chg:+.2f}% 24h)",
        f"- VIX: {ctx.volatility_index if ctx.volatility_index is not None else 'n/a'}",
        f"- DXY: {ctx.dollar_index if ctx.dollar_index is not None else 'n/a'}",
    ]
    if ctx.degraded:
        lines.append(f"- Unavailable (defaults shown): {', '.join(ctx.degraded)}")
    return "\n".join(lines)
