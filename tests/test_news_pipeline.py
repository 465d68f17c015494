import asyncio
import json
import unittest
from unittest.mock import AsyncMock, patch

import httpx

from services.ai.news.errors import NewsInputError, UpstreamParseError
from services.ai.news.news_pipeline import AnalysisOptions, analyze_news, data_requests_for
from services.ai.news.types import StrategistOutput
from services.fmp.fmp_client import FmpClient, FmpConfig
from services.http.retry_client import RetryPolicy
from services.market.market_context import FearGreed, MarketContext

HEADLINE_TOKEN = "ZQXHEADLINEQZX"

FED_BODY = (
    "The Federal Reserve held its policy rate at 5.25-5.50% as widely expected. "
    "Futures had priced a hold with near certainty and the statement was unchanged."
)

STRATEGY = {
    "informationNature": {"classification": "new_information", "confidence": 0.8, "reasoning": "surprise beat"},
    "marketImpactLogic": {
        "shouldMoveMarkets": True,
        "transmissionMechanisms": [{"channel": "fundamentals", "direction": "positive", "magnitude": "moderate"}],
    },
    "requiredData": {"marketPrices": [{"symbol": "NASDAQ:AAPL", "type": "equity"}]},
    "outputDesign": {
        "scenarioMatrix": {
            "base": {"probability": 0.6},
            "upside": {"probability": 0.25},
            "downside": {"probability": 0.15},
        }
    },
    "executorInstructions": {"mandatoryTasks": ["Assess AAPL"], "confidenceFloor": 0.5},
    "epistemicAssessment": {"incrementalInfoScore": 7},
}

ANALYSIS = {
    "executiveSummary": {"signal": "beat", "overallSentiment": "bullish"},
    "assetImpacts": [{"asset": "AAPL", "direction": "long", "conviction": 7}],
    "scenarioAnalysis": {
        "base": {"probability": 0.6},
        "upside": {"probability": 0.25},
        "downside": {"probability": 0.15},
    },
    "confidence": {"overall": 7},
}

NO_CONTEXT = AnalysisOptions(include_market_context=False, fetch_market_data=False)


class _ScriptedLLM:
    """Answers each stage from a script and records every prompt it was shown."""

    provider = "openai"

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    async def generate_json(self, *, system, user, model=None, temperature=None, max_tokens=None):
        self.calls.append({"system": system, "user": user, "model": model})
        answer = self.answers.pop(0)
        return answer if isinstance(answer, str) else json.dumps(answer)


class _SlowLLM(_ScriptedLLM):
    async def generate_json(self, **kwargs):
        await asyncio.sleep(5)
        return "{}"


def _news(**overrides):
    item = {
        "id": "n1",
        "headline": f"{HEADLINE_TOKEN} Apple smashes estimates",
        "body": "Apple reported quarterly revenue 8% above consensus, driven by services.",
        "source": "wire",
        "publishedAt": "2026-01-15",
        "tickers": ["AAPL"],
    }
    item.update(overrides)
    return item


def _fmp_client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, FmpClient(FmpConfig(api_key="k"), http=http, retry_policy=RetryPolicy(max_retries=0))


class TestAnalyzeNews(unittest.TestCase):
    def test_happy_path(self):
        llm = _ScriptedLLM(STRATEGY, ANALYSIS)
        result = asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))

        self.assertEqual(result.news_id, "n1")
        self.assertEqual(result.strategy.information_nature.classification, "new_information")
        self.assertEqual(result.analysis.asset_impacts[0].normalized_symbol, "AAPL")
        self.assertEqual(result.analysis.asset_impacts[0].trading_view_symbol, "NASDAQ:AAPL")
        self.assertEqual(result.quality_metrics.warnings, [])
        self.assertAlmostEqual(result.quality_metrics.overall_quality, 0.4 * 0.8 + 0.3 + 0.3 * 0.7)
        self.assertEqual(result.meta.pipeline, "meta-prompting-v2")
        self.assertEqual(result.meta.model_tier, "standard")
        self.assertEqual(result.meta.strategist_model, "gpt-4o")
        self.assertEqual(result.meta.executor_model, "gpt-4o-mini")
        self.assertEqual([c["model"] for c in llm.calls], ["gpt-4o", "gpt-4o-mini"])
        self.assertIsNone(result.market_data)
        wire = result.to_wire()
        self.assertIn("qualityMetrics", wire)
        self.assertIn("strategistMs", wire["timing"])

    def test_headline_never_reaches_a_prompt(self):
        llm = _ScriptedLLM(STRATEGY, ANALYSIS)
        asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))
        self.assertEqual(len(llm.calls), 2)
        for call in llm.calls:
            self.assertNotIn(HEADLINE_TOKEN, call["system"])
            self.assertNotIn(HEADLINE_TOKEN, call["user"])
        self.assertIn("services", llm.calls[0]["user"])

    def test_empty_body_fails_before_any_call(self):
        llm = _ScriptedLLM()
        with patch("services.ai.news.news_pipeline.fetch_market_context", new=AsyncMock()) as ctx:
            with self.assertRaises(NewsInputError):
                asyncio.run(analyze_news(_news(body="   "), llm=llm))
        self.assertEqual(llm.calls, [])
        ctx.assert_not_called()

    def test_unknown_tier_fails_before_any_call(self):
        llm = _ScriptedLLM()
        with self.assertRaises(NewsInputError):
            asyncio.run(analyze_news(_news(), AnalysisOptions(model_tier="platinum"), llm=llm))
        self.assertEqual(llm.calls, [])

    def test_skip_executor_returns_plan_only(self):
        llm = _ScriptedLLM(STRATEGY)
        opts = AnalysisOptions(include_market_context=False, skip_executor=True)
        result = asyncio.run(analyze_news(_news(), opts, llm=llm))

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(result.analysis.asset_impacts, [])
        self.assertEqual(result.quality_metrics.executor_adherence, 0.0)
        self.assertAlmostEqual(result.quality_metrics.overall_quality, 0.8)
        self.assertEqual(result.meta.executor_model, "")
        self.assertEqual(result.timing.executor_ms, 0)

    def test_unparseable_strategist_output(self):
        llm = _ScriptedLLM("I think the market will go up.")
        with self.assertRaises(UpstreamParseError) as cm:
            asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))
        self.assertEqual(cm.exception.stage, "strategist")
        self.assertIn("market will go up", cm.exception.raw_excerpt)
        self.assertEqual(len(llm.calls), 1)

    def test_unparseable_executor_output(self):
        llm = _ScriptedLLM(STRATEGY, "[1, 2, 3]")
        with self.assertRaises(UpstreamParseError) as cm:
            asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))
        self.assertEqual(cm.exception.stage, "executor")

    def test_fenced_json_is_accepted(self):
        llm = _ScriptedLLM("```json\n" + json.dumps(STRATEGY) + "\n```", ANALYSIS)
        result = asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))
        self.assertEqual(result.strategy.information_nature.classification, "new_information")

    def test_timeout(self):
        opts = AnalysisOptions(include_market_context=False, timeout_s=0.05)
        with self.assertRaises(asyncio.TimeoutError):
            asyncio.run(analyze_news(_news(), opts, llm=_SlowLLM()))

    def test_injected_market_context_is_used_without_fetching(self):
        ctx = MarketContext(fear_greed=FearGreed(value=12, label="Extreme Fear"))
        llm = _ScriptedLLM(STRATEGY, ANALYSIS)
        opts = AnalysisOptions(market_context=ctx, fetch_market_data=False)
        with patch("services.ai.news.news_pipeline.fetch_market_context", new=AsyncMock()) as fetch:
            asyncio.run(analyze_news(_news(), opts, llm=llm))
        fetch.assert_not_called()
        self.assertIn("Fear & Greed Index: 12 (Extreme Fear)", llm.calls[0]["user"])
        self.assertIn("Fear & Greed Index: 12 (Extreme Fear)", llm.calls[1]["user"])

    def test_market_context_can_be_disabled(self):
        llm = _ScriptedLLM(STRATEGY, ANALYSIS)
        with patch("services.ai.news.news_pipeline.fetch_market_context", new=AsyncMock()) as fetch:
            asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))
        fetch.assert_not_called()
        self.assertNotIn("Fear & Greed", llm.calls[0]["user"])


class TestMarketDataStage(unittest.TestCase):
    def test_requested_data_reaches_executor_and_is_restricted_to_named_symbols(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, request.url.params.get("symbol")))
            return httpx.Response(200, json=[{"symbol": request.url.params.get("symbol"), "price": 231.45}])

        strategy = dict(STRATEGY)
        strategy["requiredData"] = {
            "marketPrices": [{"symbol": "NASDAQ:AAPL", "type": "equity"}],
            "fmpRequests": [{"type": "quote", "symbols": ["AAPL", "TSLA"]}],
        }
        llm = _ScriptedLLM(strategy, ANALYSIS)

        async def run():
            http, fmp = _fmp_client(handler)
            async with http:
                return await analyze_news(
                    _news(), AnalysisOptions(include_market_context=False), llm=llm, fmp_client=fmp
                )

        result = asyncio.run(run())
        self.assertEqual(seen, [("/stable/quote", "AAPL")])
        self.assertEqual(result.market_data.success_count, 1)
        self.assertIn("COLLECTED MARKET DATA", llm.calls[1]["user"])
        self.assertIn("231.45", llm.calls[1]["user"])

    def test_listed_prices_without_requests_get_a_quote(self):
        strategy = StrategistOutput.model_validate(STRATEGY)
        requests = data_requests_for(strategy)
        self.assertEqual(len(requests), 1)
        self.assertEqual(requests[0].type, "quote")
        self.assertEqual(requests[0].symbols, ["NASDAQ:AAPL"])

    def test_data_failures_do_not_fail_the_item(self):
        llm = _ScriptedLLM(STRATEGY, ANALYSIS)

        async def run():
            http, fmp = _fmp_client(lambda r: httpx.Response(503))
            async with http:
                return await analyze_news(
                    _news(), AnalysisOptions(include_market_context=False), llm=llm, fmp_client=fmp
                )

        result = asyncio.run(run())
        self.assertEqual(result.market_data.success_count, 0)
        self.assertEqual(len(result.market_data.errors), 1)
        self.assertIn("Unavailable", llm.calls[1]["user"])


class TestConfirmedRateDecision(unittest.TestCase):
    def test_expected_decision_never_gets_high_conviction(self):
        strategy = {
            "informationNature": {"classification": "confirmation", "confidence": 0.9},
            "marketImpactLogic": {
                "shouldMoveMarkets": False,
                "transmissionMechanisms": [{"channel": "rates", "direction": "uncertain", "magnitude": "negligible"}],
            },
            "requiredData": {"marketPrices": [{"symbol": "SPX"}, {"symbol": "TLT"}]},
            "outputDesign": {"scenarioMatrix": {
                "base": {"probability": 0.8}, "upside": {"probability": 0.1}, "downside": {"probability": 0.1},
            }},
            "executorInstructions": {"mandatoryTasks": ["Explain why this is priced in"]},
            "epistemicAssessment": {"incrementalInfoScore": 1},
        }
        # executor ignores the plan and shouts anyway
        analysis = {
            "assetImpacts": [
                {"asset": "SPX", "direction": "long", "conviction": 9},
                {"asset": "TLT", "direction": "short", "conviction": 8},
            ],
            "scenarioAnalysis": {
                "base": {"probability": 80}, "upside": {"probability": 10}, "downside": {"probability": 10},
            },
            "confidence": {"overall": 8},
        }
        llm = _ScriptedLLM(strategy, analysis)
        result = asyncio.run(analyze_news(
            {"id": "fed-hold", "body": FED_BODY}, NO_CONTEXT, llm=llm
        ))

        self.assertFalse(result.strategy.market_impact_logic.should_move_markets)
        self.assertTrue(all(a.conviction < 8 for a in result.analysis.asset_impacts))
        self.assertTrue(any(w.startswith("Conviction capped at 5") for w in result.quality_metrics.warnings))
        # the cap is a correction, not an adherence failure
        self.assertEqual(result.quality_metrics.executor_adherence, 1.0)

    def test_market_moving_confirmation_keeps_conviction(self):
        strategy = dict(STRATEGY)
        strategy["informationNature"] = {"classification": "confirmation", "confidence": 0.7}
        analysis = dict(ANALYSIS)
        analysis["assetImpacts"] = [{"asset": "AAPL", "direction": "long", "conviction": 8}]
        llm = _ScriptedLLM(strategy, analysis)
        result = asyncio.run(analyze_news(_news(), NO_CONTEXT, llm=llm))

        self.assertEqual(result.analysis.asset_impacts[0].conviction, 8)
        self.assertEqual(result.quality_metrics.warnings, [])
        self.assertEqual(result.quality_metrics.executor_adherence, 1.0)


class TestCancellation(unittest.TestCase):
    def test_timeout_cancels_the_hanging_model_call(self):
        seen = []

        class _HangingLLM(_ScriptedLLM):
            async def generate_json(self, **kwargs):
                try:
                    await asyncio.sleep(5)
                except asyncio.CancelledError:
                    seen.append("cancelled")
                    raise
                return "{}"

        opts = AnalysisOptions(include_market_context=False, timeout_s=0.05)
        with self.assertRaises(asyncio.TimeoutError):
            asyncio.run(analyze_news(_news(), opts, llm=_HangingLLM()))
        self.assertEqual(seen, ["cancelled"])

    def test_timeout_during_data_fetch_leaves_nothing_in_flight(self):
        state = {"in_flight": 0, "cancelled": 0}

        async def handler(request):
            state["in_flight"] += 1
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                state["cancelled"] += 1
                raise
            finally:
                state["in_flight"] -= 1
            return httpx.Response(200, json=[])

        strategy = dict(STRATEGY)
        strategy["requiredData"] = {
            "fmpRequests": [{"type": "quote", "symbols": ["AAPL"]}, {"type": "treasury_rates"}],
        }
        llm = _ScriptedLLM(strategy, ANALYSIS)

        async def run():
            http, fmp = _fmp_client(handler)
            async with http:
                opts = AnalysisOptions(include_market_context=False, timeout_s=0.1)
                return await analyze_news(_news(), opts, llm=llm, fmp_client=fmp)

        with self.assertRaises(asyncio.TimeoutError):
            asyncio.run(run())
        self.assertGreaterEqual(state["cancelled"], 1)
        self.assertEqual(state["in_flight"], 0)
        # the executor was never reached
        self.assertEqual(len(llm.calls), 1)


if __name__ == "__main__":
    unittest.main()
