# services/fmp/handlers.py
"""
FMP request-type registry.

Every data type the strategist may ask for is one entry in FMP_HANDLERS.
Simple endpoints are registered with the ``per_symbol`` / ``global_type``
factories (one line each); endpoints with their own shaping use the
``@register`` decorator directly.

Handlers return a HandlerResult and never decide what counts as an error for
the pack: the dispatcher turns empty data and per-symbol failures into
``errors[]`` entries.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from services.fmp.fmp_client import FmpClient
from services.fmp.request_types import FmpRequestParams
from utils.common_helpers import clamp

PER_SYMBOL_CONCURRENCY = 4


@dataclass(frozen=True)
class HandlerContext:
    client: FmpClient
    reference_date: date


@dataclass
class HandlerResult:
    data: Any = None
    failures: List[str] = field(default_factory=list)
    per_symbol: bool = False


HandlerFn = Callable[[HandlerContext, List[str], FmpRequestParams], Awaitable[HandlerResult]]
QueryFn = Callable[[HandlerContext, FmpRequestParams], Dict[str, Any]]


@dataclass(frozen=True)
class FmpHandler:
    type: str
    fn: HandlerFn
    needs_symbols: bool
    category: str
    description: str
    params_hint: str = ""


FMP_HANDLERS: Dict[str, FmpHandler] = {}


def register(
    type_: str,
    *,
    category: str,
    description: str,
    needs_symbols: bool = True,
    params_hint: str = "",
) -> Callable[[HandlerFn], HandlerFn]:
    def deco(fn: HandlerFn) -> HandlerFn:
        if type_ in FMP_HANDLERS:
            raise ValueError(f"FMP handler already registered: {type_}")
        FMP_HANDLERS[type_] = FmpHandler(
            type=type_,
            fn=fn,
            needs_symbols=needs_symbols,
            category=category,
            description=description,
            params_hint=params_hint,
        )
        return fn

    return deco


# ---------------------------------------------------------------------------
# payload helpers
# ---------------------------------------------------------------------------

def is_empty_payload(data: Any) -> bool:
    if data is None:
        return True
    if isinstance(data, (list, dict, str)):
        return len(data) == 0
    return False


def _rows(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict) and data:
        return [data]
    return []


def _first_row(data: Any) -> Optional[Dict[str, Any]]:
    rows = _rows(data)
    return rows[0] if rows else None


def _iso(d: date) -> str:
    return d.isoformat()


def _window(ctx: HandlerContext, days_back: int, days_forward: int = 0) -> Dict[str, str]:
    return {
        "from": _iso(ctx.reference_date - timedelta(days=days_back)),
        "to": _iso(ctx.reference_date + timedelta(days=days_forward)),
    }


def _statement_query(ctx: HandlerContext, p: FmpRequestParams) -> Dict[str, Any]:
    period = (p.period or "annual").lower()
    if period not in ("annual", "quarter"):
        period = "annual"
    return {"period": period, "limit": int(clamp(p.limit or 1, 1, 5))}


def _indicator_query(default_length: int) -> QueryFn:
    def build(ctx: HandlerContext, p: FmpRequestParams) -> Dict[str, Any]:
        return {
            "periodLength": int(clamp(p.period_length or default_length, 2, 100)),
            "timeframe": p.timeframe or "1day",
        }

    return build


def _row_limit(limit: Optional[int], max_rows: Optional[int]) -> Optional[int]:
    """Requested row count clamped to 1..max_rows; no request means max_rows."""
    if limit is None:
        return max_rows
    return int(clamp(limit, 1, max_rows or max(limit, 1)))


def _trim(data: Any, max_rows: Optional[int]) -> Any:
    if max_rows and isinstance(data, list):
        return data[:max_rows]
    return data


# ---------------------------------------------------------------------------
# factories
# ---------------------------------------------------------------------------

async def _fetch_each(
    ctx: HandlerContext,
    symbols: List[str],
    fetch: Callable[[str], Awaitable[Any]],
) -> HandlerResult:
    sem = asyncio.Semaphore(PER_SYMBOL_CONCURRENCY)

    async def one(sym: str) -> Any:
        async with sem:
            return await fetch(sym)

    outcomes = await asyncio.gather(*(one(s) for s in symbols), return_exceptions=True)

    out: Dict[str, Any] = {}
    failures: List[str] = []
    for sym, res in zip(symbols, outcomes):
        if isinstance(res, asyncio.CancelledError):
            raise res
        if isinstance(res, Exception):
            failures.append(f"{sym} ({res})")
        elif is_empty_payload(res):
            failures.append(f"{sym} (no data)")
        else:
            out[sym] = res
    return HandlerResult(data=out, failures=failures, per_symbol=True)


def per_symbol(
    type_: str,
    path: str,
    *,
    category: str,
    description: str,
    query: Optional[QueryFn] = None,
    first_row: bool = False,
    max_rows: Optional[int] = None,
    params_hint: str = "",
) -> HandlerFn:
    """Register a type that calls ``path?symbol=X`` once per symbol."""

    async def handler(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
        extra = query(ctx, p) if query else {}

        async def fetch(sym: str) -> Any:
            data = await ctx.client.get_json(path, {"symbol": sym, **extra})
            return _first_row(data) if first_row else _trim(data, max_rows)

        return await _fetch_each(ctx, symbols, fetch)

    return register(
        type_,
        category=category,
        description=description,
        needs_symbols=True,
        params_hint=params_hint,
    )(handler)


def global_type(
    type_: str,
    path: str,
    *,
    category: str,
    description: str,
    query: Optional[QueryFn] = None,
    max_rows: Optional[int] = None,
    params_hint: str = "",
) -> HandlerFn:
    """Register a type that needs no symbols (calendars, macro, breadth)."""

    async def handler(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
        extra = query(ctx, p) if query else {}
        data = await ctx.client.get_json(path, extra)
        return HandlerResult(data=_trim(data, _row_limit(p.limit, max_rows)))

    return register(
        type_,
        category=category,
        description=description,
        needs_symbols=False,
        params_hint=params_hint,
    )(handler)


def _joined_symbols(type_: str, path: str, param: str, *, category: str, description: str,
                    max_rows: Optional[int] = None) -> HandlerFn:
    """Register a type whose endpoint takes all symbols in one comma-joined call."""

    async def handler(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
        data = await ctx.client.get_json(path, {param: ",".join(symbols)})
        return HandlerResult(data=_trim(data, _row_limit(p.limit, max_rows)))

    return register(type_, category=category, description=description, needs_symbols=True)(handler)


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------

per_symbol("quote", "/quote", category="Price", description="real-time quote", first_row=True)
_joined_symbols("batch_quote", "/batch-quote", "symbols", category="Price",
                description="quotes for several symbols in one call")
global_type("crypto_quotes", "/batch-crypto-quotes", category="Price",
            description="all crypto quotes", query=lambda c, p: {"short": "true"}, max_rows=50)
global_type("forex_quotes", "/batch-forex-quotes", category="Price",
            description="all forex pair quotes", query=lambda c, p: {"short": "true"}, max_rows=50)
global_type("commodity_quotes", "/batch-commodity-quotes", category="Price",
            description="all commodity quotes", query=lambda c, p: {"short": "true"}, max_rows=50)
global_type("index_quotes", "/batch-index-quotes", category="Price",
            description="all index quotes", query=lambda c, p: {"short": "true"}, max_rows=50)
per_symbol("price_change", "/stock-price-change", category="Price",
           description="1D/5D/1M/YTD/1Y price change", first_row=True)

_INTERVAL_MINUTES = {"1min": 1, "5min": 5, "15min": 15, "30min": 30, "1hour": 60, "4hour": 240}


@register(
    "intraday",
    category="Price",
    description="intraday candles",
    params_hint="interval=1min|5min|15min|30min|1hour|4hour, lookback_minutes<=4320",
)
async def intraday(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
    interval = p.interval if p.interval in _INTERVAL_MINUTES else "1hour"
    lookback = int(clamp(p.lookback_minutes or 120, 1, 4320))
    limit = max(1, math.ceil(lookback / _INTERVAL_MINUTES[interval]))
    days_back = max(1, math.ceil(lookback / 1440) + 3)

    async def fetch(sym: str) -> Any:
        data = await ctx.client.get_json(
            f"/historical-chart/{interval}",
            {"symbol": sym, **_window(ctx, days_back)},
        )
        candles = _rows(data)[:limit]
        if not candles:
            return None
        return {"interval": interval, "lookbackMinutes": lookback, "candles": candles}

    return await _fetch_each(ctx, symbols, fetch)


@register("eod", category="Price", description="daily closes", params_hint="lookback_days<=365")
async def eod(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
    lookback = int(clamp(p.lookback_days or 30, 1, 365))

    async def fetch(sym: str) -> Any:
        return _rows(await ctx.client.get_json(
            "/historical-price-eod/light",
            {"symbol": sym, **_window(ctx, lookback)},
        ))

    return await _fetch_each(ctx, symbols, fetch)


# ---------------------------------------------------------------------------
# Company
# ---------------------------------------------------------------------------

per_symbol("profile", "/profile", category="Company", description="profile, sector, market cap", first_row=True)
per_symbol("key_executives", "/key-executives", category="Company", description="management team")
per_symbol("peers", "/stock-peers", category="Company", description="peer companies", max_rows=15)
per_symbol("market_cap", "/market-capitalization", category="Company", description="market capitalization",
           first_row=True)

# ---------------------------------------------------------------------------
# Financial statements
# ---------------------------------------------------------------------------

_STATEMENT_HINT = "period=annual|quarter, limit<=5"

per_symbol("income_statement", "/income-statement", category="Financials", description="income statement",
           query=_statement_query, params_hint=_STATEMENT_HINT)
per_symbol("balance_sheet", "/balance-sheet-statement", category="Financials", description="balance sheet",
           query=_statement_query, params_hint=_STATEMENT_HINT)
per_symbol("cash_flow", "/cash-flow-statement", category="Financials", description="cash flow statement",
           query=_statement_query, params_hint=_STATEMENT_HINT)
per_symbol("key_metrics", "/key-metrics", category="Financials", description="valuation and per-share metrics",
           query=_statement_query, params_hint=_STATEMENT_HINT)
per_symbol("ratios", "/ratios", category="Financials", description="financial ratios",
           query=_statement_query, params_hint=_STATEMENT_HINT)
per_symbol("financial_growth", "/financial-growth", category="Financials", description="growth rates",
           query=_statement_query, params_hint=_STATEMENT_HINT)

# ---------------------------------------------------------------------------
# Earnings & dividends
# ---------------------------------------------------------------------------

per_symbol("earnings", "/earnings", category="Earnings", description="earnings history and surprises",
           max_rows=8)
per_symbol("dividends", "/dividends", category="Earnings", description="dividend history", max_rows=8)
global_type("earnings_calendar", "/earnings-calendar", category="Earnings",
            description="earnings calendar (-7d..+30d, automatic dates)",
            query=lambda c, p: _window(c, 7, 30), max_rows=100)
global_type("dividends_calendar", "/dividends-calendar", category="Earnings",
            description="dividend calendar (-7d..+30d)", query=lambda c, p: _window(c, 7, 30), max_rows=100)
global_type("ipo_calendar", "/ipos-calendar", category="Earnings",
            description="IPO calendar (-7d..+30d)", query=lambda c, p: _window(c, 7, 30), max_rows=50)

# ---------------------------------------------------------------------------
# Analysts
# ---------------------------------------------------------------------------

per_symbol("analyst_estimates", "/analyst-estimates", category="Analyst", description="consensus estimates",
           query=lambda c, p: {"period": "annual", "limit": 2})
per_symbol("price_target", "/price-target-summary", category="Analyst", description="price target summary",
           first_row=True)
per_symbol("price_target_consensus", "/price-target-consensus", category="Analyst",
           description="high/low/median price target", first_row=True)
per_symbol("grades", "/grades", category="Analyst", description="recent upgrades/downgrades", max_rows=10)
per_symbol("ratings", "/ratings-snapshot", category="Analyst", description="fundamental rating snapshot",
           first_row=True)

# ---------------------------------------------------------------------------
# Macro
# ---------------------------------------------------------------------------

global_type("economic_indicators", "/economic-indicators", category="Macro",
            description="macro series over the past year",
            query=lambda c, p: {"name": p.indicator_name or "GDP", **_window(c, 365)},
            params_hint="indicator_name=GDP|CPI|unemploymentRate|federalFunds|inflationRate")
global_type("treasury_rates", "/treasury-rates", category="Macro", description="treasury yield curve (30d)",
            query=lambda c, p: _window(c, 30))
global_type("market_risk_premium", "/market-risk-premium", category="Macro",
            description="equity risk premium by country", max_rows=30)
global_type("economic_calendar", "/economic-calendar", category="Macro",
            description="scheduled macro releases (-3d..+7d)", query=lambda c, p: _window(c, 3, 7), max_rows=100)

# ---------------------------------------------------------------------------
# Technical indicators
# ---------------------------------------------------------------------------

_TECH_HINT = "period_length, timeframe=1day|1hour|..."

for _type, _endpoint, _default, _desc in (
    ("rsi", "rsi", 14, "relative strength index"),
    ("sma", "sma", 20, "simple moving average"),
    ("ema", "ema", 20, "exponential moving average"),
    ("wma", "wma", 20, "weighted moving average"),
    ("atr", "atr", 14, "average true range"),
    ("bollinger_bands", "bollinger", 20, "bollinger bands"),
    ("adx", "adx", 14, "average directional index"),
    ("williams", "williams", 14, "williams %R"),
    ("standard_deviation", "standarddeviation", 20, "rolling standard deviation"),
):
    per_symbol(_type, f"/technical-indicators/{_endpoint}", category="Technical", description=_desc,
               query=_indicator_query(_default), max_rows=30, params_hint=f"{_TECH_HINT} (default {_default})")

# ---------------------------------------------------------------------------
# Market breadth
# ---------------------------------------------------------------------------

global_type("gainers", "/biggest-gainers", category="Breadth", description="top gainers today", max_rows=15)
global_type("losers", "/biggest-losers", category="Breadth", description="top losers today", max_rows=15)
global_type("most_active", "/most-actives", category="Breadth", description="most active today", max_rows=15)
global_type("sector_performance", "/sector-performance-snapshot", category="Breadth",
            description="sector performance on the news date", query=lambda c, p: {"date": _iso(c.reference_date)})
global_type("industry_performance", "/industry-performance-snapshot", category="Breadth",
            description="industry performance on the news date",
            query=lambda c, p: {"date": _iso(c.reference_date)}, max_rows=50)

# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------

per_symbol("insider_trading", "/insider-trading/statistics", category="Ownership",
           description="insider buy/sell statistics", max_rows=4)


def _last_closed_quarter(ctx: HandlerContext, p: FmpRequestParams) -> Dict[str, Any]:
    d = ctx.reference_date
    q = (d.month - 1) // 3
    if q == 0:
        return {"year": d.year - 1, "quarter": 4}
    return {"year": d.year, "quarter": q}


per_symbol("institutional_ownership", "/institutional-ownership/symbol-positions-summary",
           category="Ownership", description="13F holder summary (last closed quarter)",
           query=_last_closed_quarter, first_row=True)

# ---------------------------------------------------------------------------
# Indices & ETFs
# ---------------------------------------------------------------------------

global_type("sp500_constituents", "/sp500-constituent", category="Index", description="S&P 500 members")
global_type("nasdaq_constituents", "/nasdaq-constituent", category="Index", description="Nasdaq 100 members")
global_type("dowjones_constituents", "/dowjones-constituent", category="Index", description="Dow Jones members")
per_symbol("etf_holdings", "/etf/holdings", category="ETF", description="top ETF holdings", max_rows=25)
per_symbol("etf_sector_weightings", "/etf/sector-weightings", category="ETF", description="ETF sector weights")

# ---------------------------------------------------------------------------
# News
# ---------------------------------------------------------------------------

_joined_symbols("stock_news", "/news/stock", "symbols", category="News",
                description="latest stock news for symbols", max_rows=10)
_joined_symbols("press_releases", "/news/press-releases", "symbols", category="News",
                description="company press releases", max_rows=10)
global_type("general_news", "/news/general-latest", category="News", description="general market news",
            query=lambda c, p: {"limit": 10}, max_rows=10)
global_type("crypto_news", "/news/crypto-latest", category="News", description="crypto news",
            query=lambda c, p: {"limit": 10}, max_rows=10)
global_type("forex_news", "/news/forex-latest", category="News", description="forex news",
            query=lambda c, p: {"limit": 10}, max_rows=10)
global_type("market_hours", "/all-exchange-market-hours", category="Other",
            description="which exchanges are open now")

# ---------------------------------------------------------------------------
# Composites
# ---------------------------------------------------------------------------


async def run_composite(
    ctx: HandlerContext,
    components: List[str],
    symbols: List[str],
    params: FmpRequestParams,
) -> HandlerResult:
    """Run several registered types concurrently and merge them under their type names."""
    outcomes = await asyncio.gather(
        *(FMP_HANDLERS[t].fn(ctx, symbols, params) for t in components),
        return_exceptions=True,
    )
    merged: Dict[str, Any] = {}
    failures: List[str] = []
    for t, res in zip(components, outcomes):
        if isinstance(res, asyncio.CancelledError):
            raise res
        if isinstance(res, Exception):
            failures.append(f"{t} ({res})")
            continue
        if is_empty_payload(res.data):
            failures.append(f"{t} (no data)")
            continue
        merged[t] = res.data
        failures.extend(f"{t}: {f}" for f in res.failures)
    return HandlerResult(data=merged, failures=failures)


COMPANY_COMPONENTS = ["quote", "profile", "key_metrics", "ratios", "earnings", "price_target"]
MACRO_COMPONENTS = ["treasury_rates", "economic_calendar", "market_risk_premium", "index_quotes"]


@register("comprehensive_company", category="Composite",
          description="quote + profile + key metrics + ratios + earnings + price target")
async def comprehensive_company(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
    return await run_composite(ctx, COMPANY_COMPONENTS, symbols, p)


@register("comprehensive_macro", category="Composite", needs_symbols=False,
          description="treasury curve + economic calendar + risk premium + index quotes")
async def comprehensive_macro(ctx: HandlerContext, symbols: List[str], p: FmpRequestParams) -> HandlerResult:
    return await run_composite(ctx, MACRO_COMPONENTS, symbols, p)
