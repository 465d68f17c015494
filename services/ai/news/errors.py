# services/ai/news/errors.py
from __future__ import annotations

from typing import Optional

from utils.common_helpers import excerpt


class NewsAnalysisError(Exception):
    """Base error for the news analysis pipeline."""


class NewsInputError(NewsAnalysisError):
    """The news item cannot be analyzed (e.g. empty body)."""


class UpstreamParseError(NewsAnalysisError):
    """An LLM stage answered with something that is not a JSON object."""

    def __init__(self, stage: str, raw: Optional[str], reason: str = ""):
        self.stage = stage
        self.raw_excerpt = excerpt(raw, 300)
        msg = f"Failed to parse {stage} output"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
