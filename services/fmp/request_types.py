# services/fmp/request_types.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from schemas.base import CamelModel, FrozenCamelModel
from utils.common_helpers import safe_float


class FmpRequestParams(CamelModel):
    interval: Optional[str] = None
    lookback_minutes: Optional[int] = None
    lookback_days: Optional[int] = None
    period: Optional[str] = None
    limit: Optional[int] = None
    indicator_name: Optional[str] = None
    period_length: Optional[int] = None
    timeframe: Optional[str] = None

    @field_validator("lookback_minutes", "lookback_days", "limit", "period_length", mode="before")
    @classmethod
    def _coerce_int(cls, v: Any) -> Optional[int]:
        f = safe_float(v)
        return int(f) if f is not None else None

    @field_validator("interval", "period", "indicator_name", "timeframe", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        s = str(v).strip()
        return s or None


class FmpDataRequest(CamelModel):
    """
    One typed data need declared by the strategist.

    ``type`` stays a plain string so unknown types survive parsing and are
    reported by the dispatcher instead of failing the whole plan.
    """

    type: str = ""
    symbols: List[str] = Field(default_factory=list)
    params: FmpRequestParams = Field(default_factory=FmpRequestParams)

    @field_validator("type", mode="before")
    @classmethod
    def _norm_type(cls, v: Any) -> str:
        return str(v or "").strip().lower().replace("-", "_").replace(" ", "_")

    @field_validator("symbols", mode="before")
    @classmethod
    def _norm_symbols(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if not isinstance(v, (list, tuple)):
            return []
        return [str(s).strip() for s in v if isinstance(s, (str, int)) and str(s).strip()]

    @field_validator("params", mode="before")
    @classmethod
    def _norm_params(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, FmpRequestParams)) else {}


class FmpCollectedPack(FrozenCamelModel):
    generated_at: str
    by_type: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    request_count: int = 0
    success_count: int = 0
