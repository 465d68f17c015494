import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from main import app
from services.ai.news.errors import NewsInputError, UpstreamParseError
from services.fmp.request_types import FmpCollectedPack
from services.market.market_context import MarketContext


class TestNewsAnalysisRoutes(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(app)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_errors_map_to_status_codes(self):
        cases = [
            (NewsInputError("News body is required"), 400),
            (UpstreamParseError("executor", "garbage"), 502),
            (asyncio.TimeoutError(), 504),
        ]
        body = {"news": {"id": "n1", "body": "text"}, "options": {"modelTier": "economy"}}
        for exc, status in cases:
            with self.subTest(status=status):
                with patch("routers.news_analysis_routes.analyze_news", new=AsyncMock(side_effect=exc)):
                    r = self.client.post("/api/news-analysis/analyze", json=body)
                self.assertEqual(r.status_code, status)

    def test_options_are_passed_through(self):
        mock = AsyncMock(side_effect=NewsInputError("stop"))
        body = {"news": {"id": "n1", "body": "text"}, "options": {"modelTier": "premium", "skipExecutor": True}}
        with patch("routers.news_analysis_routes.analyze_news", new=mock):
            self.client.post("/api/news-analysis/analyze", json=body)
        news, opts = mock.call_args.args
        self.assertEqual(news.id, "n1")
        self.assertEqual(opts.model_tier, "premium")
        self.assertTrue(opts.skip_executor)

    def test_empty_batch_is_rejected(self):
        r = self.client.post("/api/news-analysis/batch", json={"items": []})
        self.assertEqual(r.status_code, 400)

    def test_batch_concurrency_is_bounded(self):
        r = self.client.post(
            "/api/news-analysis/batch",
            json={"items": [{"id": "a", "body": "x"}], "maxConcurrency": 50},
        )
        self.assertEqual(r.status_code, 422)

    def test_fmp_data_returns_camel_case_pack(self):
        pack = FmpCollectedPack(generated_at="2026-01-15T00:00:00Z", by_type={}, errors=["Unknown request type: x"],
                                request_count=1, success_count=0)
        with patch("routers.news_analysis_routes.execute_fmp_requests", new=AsyncMock(return_value=pack)):
            r = self.client.post("/api/news-analysis/fmp-data", json={"requests": [{"type": "x"}]})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["requestCount"], 1)
        self.assertEqual(r.json()["errors"], ["Unknown request type: x"])

    def test_market_context(self):
        with patch("routers.news_analysis_routes.fetch_market_context", new=AsyncMock(return_value=MarketContext())):
            r = self.client.get("/api/news-analysis/market-context")
        self.assertEqual(r.json()["fearGreed"], {"value": 50, "label": "Neutral"})


if __name__ == "__main__":
    unittest.main()
