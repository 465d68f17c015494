# services/fmp/fmp_client.py
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from dotenv import load_dotenv

from services.http.retry_client import RetryPolicy, SleepFn, request_with_retry
from utils.common_helpers import safe_json

load_dotenv()

logger = logging.getLogger(__name__)

FMP_STABLE_BASE_URL = "https://financialmodelingprep.com/stable"


class FmpServiceError(Exception):
    """Domain-level error for the FMP client."""


@dataclass
class FmpConfig:
    api_key: str = ""
    base_url: str = FMP_STABLE_BASE_URL
    timeout_s: float = 15.0

    @staticmethod
    def from_env() -> "FmpConfig":
        return FmpConfig(
            api_key=os.getenv("FMP_API_KEY", ""),
            base_url=(os.getenv("FMP_BASE_URL") or FMP_STABLE_BASE_URL).rstrip("/"),
            timeout_s=float(os.getenv("FMP_TIMEOUT_S", "15")),
        )


class FmpClient:
    """
    Async client for the FMP "stable" REST API.

    Every call goes through the retrying sender and carries an explicit
    timeout. Non-2xx answers, non-JSON bodies and FMP's
    ``{"Error Message": ...}`` envelopes raise FmpServiceError; callers decide
    whether that is fatal.
    """

    def __init__(
        self,
        config: Optional[FmpConfig] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config or FmpConfig.from_env()
        self.retry_policy = retry_policy or RetryPolicy.from_env()
        self._http = http
        self._sleep = sleep

    @asynccontextmanager
    async def session(self) -> AsyncIterator["FmpClient"]:
        """Yield a client bound to one pooled connection set for a unit of work."""
        if self._http is not None:
            yield self
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_s) as c:
            yield FmpClient(
                self.config,
                http=c,
                retry_policy=self.retry_policy,
                sleep=self._sleep,
            )

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_s) as c:
            yield c

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.config.api_key:
            raise FmpServiceError("Missing FMP_API_KEY")

        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["apikey"] = self.config.api_key
        url = f"{self.config.base_url}{path}"

        async with self._client() as c:
            r = await request_with_retry(
                c,
                "GET",
                url,
                params=query,
                timeout=self.config.timeout_s,
                policy=self.retry_policy,
                sleep=self._sleep,
            )
        if r.status_code >= 400:
            raise FmpServiceError(f"FMP {path} failed: {r.status_code}")

        data = safe_json(r)
        if data is None:
            raise FmpServiceError(f"FMP {path} returned a non-JSON body")
        if isinstance(data, dict) and data.get("Error Message"):
            raise FmpServiceError(f"FMP {path} error: {data['Error Message']}")
        return data

    async def get_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        """First quote row for ``symbol`` or None when FMP has nothing."""
        data = await self.get_json("/quote", {"symbol": symbol})
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        if isinstance(data, dict) and data:
            return data
        return None
