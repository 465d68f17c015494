from __future__ import annotations

from typing import List, Optional

from pydantic import Field

from schemas.base import CamelModel
from services.ai.news.news_pipeline import AnalysisOptions
from services.ai.news.types import NewsInput
from services.fmp.request_types import FmpDataRequest


class AnalysisOptionsIn(CamelModel):
    model_tier: str = "standard"
    include_market_context: bool = True
    skip_executor: bool = False
    fetch_market_data: bool = True
    restrict_to_named_symbols: bool = True
    timeout_s: Optional[float] = Field(default=None, gt=0, le=600)

    def to_options(self) -> AnalysisOptions:
        return AnalysisOptions(
            model_tier=self.model_tier,
            include_market_context=self.include_market_context,
            skip_executor=self.skip_executor,
            fetch_market_data=self.fetch_market_data,
            restrict_to_named_symbols=self.restrict_to_named_symbols,
            timeout_s=self.timeout_s,
        )


class AnalyzeNewsRequest(CamelModel):
    news: NewsInput
    options: AnalysisOptionsIn = Field(default_factory=AnalysisOptionsIn)


class AnalyzeBatchRequest(CamelModel):
    items: List[NewsInput] = Field(default_factory=list, max_length=100)
    options: AnalysisOptionsIn = Field(default_factory=AnalysisOptionsIn)
    max_concurrency: int = Field(default=1, ge=1, le=8)


class FmpDataRequestBody(CamelModel):
    requests: List[FmpDataRequest] = Field(default_factory=list)
    allowed_symbols: Optional[List[str]] = None
    reference_date: Optional[str] = None
