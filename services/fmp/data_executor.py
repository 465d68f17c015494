# services/fmp/data_executor.py
from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError

from services.fmp.fmp_client import FmpClient
from services.fmp.handlers import FMP_HANDLERS, HandlerContext, HandlerResult, is_empty_payload
from services.fmp.request_types import FmpCollectedPack, FmpDataRequest
from services.market.symbols import filter_allowed_symbols
from utils.common_helpers import elapsed_ms, iso_now

logger = logging.getLogger(__name__)

RequestLike = Union[FmpDataRequest, Dict[str, Any]]


def _reference_date(value: Union[date, datetime, str, None]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            logger.warning("fmp: unparseable reference date %r, using today", value)
    return datetime.now(timezone.utc).date()


def _merge(existing: Any, new: Any, per_symbol: bool) -> Any:
    if per_symbol and isinstance(existing, dict) and isinstance(new, dict):
        return {**existing, **new}
    return new


def build_data_menu() -> str:
    """Prompt block listing every registered request type, grouped by category."""
    groups: Dict[str, List[str]] = {}
    for h in FMP_HANDLERS.values():
        scope = "symbols" if h.needs_symbols else "no symbols"
        hint = f"; params: {h.params_hint}" if h.params_hint else ""
        groups.setdefault(h.category, []).append(f"- {h.type}: {h.description} ({scope}{hint})")

    lines = [
        'FMP DATA MENU: add items to requiredData.fmpRequests as '
        '{"type": "<type>", "symbols": ["..."], "params": {...}}.',
        "Only use symbols named in the news or your asset list. 1-5 requests are usually enough.",
    ]
    for category, entries in groups.items():
        lines.append("")
        lines.append(f"[{category}]")
        lines.extend(entries)
    lines.append("")
    lines.append(
        'Example: [{"type":"quote","symbols":["AAPL"]},'
        '{"type":"rsi","symbols":["AAPL"],"params":{"periodLength":14}},'
        '{"type":"treasury_rates"}]'
    )
    return "\n".join(lines)


FMP_DATA_MENU = build_data_menu()


async def _run_one(
    ctx: HandlerContext,
    req: FmpDataRequest,
    allowed_symbols: Optional[Iterable[str]],
) -> HandlerResult:
    handler = FMP_HANDLERS[req.type]
    symbols = filter_allowed_symbols(req.symbols, allowed_symbols)
    if handler.needs_symbols and not symbols:
        raise ValueError("no usable symbols")
    return await handler.fn(ctx, symbols, req.params)


async def execute_fmp_requests(
    requests: Optional[Sequence[RequestLike]],
    allowed_symbols: Optional[Iterable[str]] = None,
    reference_date: Union[date, datetime, str, None] = None,
    client: Optional[FmpClient] = None,
) -> FmpCollectedPack:
    """
    Run the strategist's data requests in order and collect the results.

    Never raises for upstream problems: every request is its own failure
    domain and lands in ``errors`` with exactly one entry when it fails.
    """
    t0 = time.perf_counter()
    items = list(requests or [])
    allowed = list(allowed_symbols) if allowed_symbols else None
    by_type: Dict[str, Any] = {}
    errors: List[str] = []
    success_count = 0

    fmp = client or FmpClient()
    async with fmp.session() as session:
        ctx = HandlerContext(client=session, reference_date=_reference_date(reference_date))
        for raw in items:
            try:
                req = raw if isinstance(raw, FmpDataRequest) else FmpDataRequest.model_validate(raw)
            except ValidationError as e:
                errors.append(f"invalid request: {e.errors()[0].get('msg', 'validation error')}")
                continue

            if req.type not in FMP_HANDLERS:
                errors.append(f"Unknown request type: {req.type or '(empty)'}")
                continue

            try:
                res = await _run_one(ctx, req, allowed)
            except Exception as e:
                logger.warning("fmp request failed type=%s err=%s", req.type, e)
                errors.append(f"{req.type}: {e}")
                continue

            if is_empty_payload(res.data):
                if res.failures:
                    errors.append(f"{req.type}: failed for {', '.join(res.failures)}")
                else:
                    errors.append(f"{req.type}: no data")
                continue

            by_type[req.type] = _merge(by_type.get(req.type), res.data, res.per_symbol)
            success_count += 1
            if res.failures:
                errors.append(f"{req.type}: partial failure for {', '.join(res.failures)}")

    logger.info(
        "fmp requests done count=%d ok=%d errors=%d ms=%d",
        len(items), success_count, len(errors), elapsed_ms(t0),
    )
    return FmpCollectedPack(
        generated_at=iso_now(),
        by_type=by_type,
        errors=errors,
        request_count=len(items),
        success_count=success_count,
    )
