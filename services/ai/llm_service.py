# services/ai/llm_service.py
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
from dotenv import load_dotenv

from services.http.retry_client import RetryPolicy, SleepFn, request_with_retry

load_dotenv()

logger = logging.getLogger(__name__)


# ============================================================================
# PUBLIC INTERFACE
# ============================================================================

class LLMClient(Protocol):
    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """Return raw text that should be JSON."""


@dataclass
class LLMConfig:
    provider: str = "openai"  # openai | anthropic | gemini
    temperature: float = 0.3
    max_tokens: int = 3000

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_s: float = 90.0

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-latest"
    anthropic_timeout_s: float = 90.0

    # Gemini (Vertex AI)
    gemini_model: str = "gemini-2.5-flash"
    gcp_project_id: str = ""
    gcp_location: str = "us-central1"

    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @staticmethod
    def from_env() -> "LLMConfig":
        provider = (os.getenv("AI_PROVIDER") or "openai").lower()
        return LLMConfig(
            provider=provider,
            temperature=float(os.getenv("AI_TEMPERATURE", "0.3")),
            max_tokens=int(os.getenv("AI_MAX_TOKENS", "3000")),

            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL") or "gpt-4o-mini",
            openai_timeout_s=float(os.getenv("OPENAI_TIMEOUT_S", "90")),

            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            anthropic_model=os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest",
            anthropic_timeout_s=float(os.getenv("ANTHROPIC_TIMEOUT_S", "90")),

            gemini_model=os.getenv("GEMINI_MODEL") or "gemini-2.5-flash",
            gcp_project_id=os.getenv("GCP_PROJECT_ID", ""),
            gcp_location=os.getenv("GCP_LOCATION") or "us-central1",

            retry=RetryPolicy.from_env(),
        )

    def default_model(self) -> str:
        p = (self.provider or "openai").lower()
        if p == "anthropic":
            return self.anthropic_model
        if p == "gemini":
            return self.gemini_model
        return self.openai_model


# ============================================================================
# PROVIDER CLIENTS
# ============================================================================

class OpenAIClient:
    URL = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        api_key: str,
        timeout_s: float = 90.0,
        *,
        retry: Optional[RetryPolicy] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.retry = retry or RetryPolicy()
        self._http = http
        self._sleep = sleep

    async def _post(self, c: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
        return await request_with_retry(
            c, "POST", self.URL,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.timeout_s,
            policy=self.retry,
            sleep=self._sleep,
        )

    async def generate_json(self, *, system: str, user: str, model: str, temperature: float, max_tokens: int) -> str:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        if self._http is not None:
            r = await self._post(self._http, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as c:
                r = await self._post(c, payload)
        r.raise_for_status()
        data = r.json()
        return data["choices"][0]["message"]["content"] or ""


class AnthropicClient:
    URL = "https://api.anthropic.com/v1/messages"

    def __init__(
        self,
        api_key: str,
        timeout_s: float = 90.0,
        *,
        retry: Optional[RetryPolicy] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.retry = retry or RetryPolicy()
        self._http = http
        self._sleep = sleep

    async def _post(self, c: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
        return await request_with_retry(
            c, "POST", self.URL,
            headers={
                "x-api-key": self.api_key,
                "Content-Type": "application/json",
                "anthropic-version": "2023-06-01",
            },
            json=payload,
            timeout=self.timeout_s,
            policy=self.retry,
            sleep=self._sleep,
        )

    async def generate_json(self, *, system: str, user: str, model: str, temperature: float, max_tokens: int) -> str:
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": user}],
            "temperature": temperature,
        }
        if self._http is not None:
            r = await self._post(self._http, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as c:
                r = await self._post(c, payload)
        r.raise_for_status()
        data = r.json()
        # content is a list of blocks; JSON answers come back as text blocks
        return "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")


class GeminiClient:
    def __init__(self, project_id: str = "", location: str = "us-central1"):
        self.project_id = project_id
        self.location = location

    async def generate_json(self, *, system: str, user: str, model: str, temperature: float, max_tokens: int) -> str:
        # google-genai SDK is sync; run in thread.
        return await asyncio.to_thread(self._sync_call, system, user, model, temperature, max_tokens)

    def _sync_call(self, system: str, user: str, model: str, temperature: float, max_tokens: int) -> str:
        from google import genai
        from google.genai import types

        client = genai.Client(
            vertexai=True,
            project=self.project_id or os.getenv("GCP_PROJECT_ID"),
            location=self.location,
        )
        config = types.GenerateContentConfig(
            system_instruction=system,
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
        )
        resp = client.models.generate_content(
            model=model,
            contents=[types.Content(role="user", parts=[types.Part.from_text(text=user)])],
            config=config,
        )
        return resp.text if getattr(resp, "text", None) else ""


# ============================================================================
# LLM SERVICE (reusable everywhere)
# ============================================================================

class LLMService:
    def __init__(self, cfg: Optional[LLMConfig] = None, client: Optional[LLMClient] = None):
        self.cfg = cfg or LLMConfig.from_env()
        self.provider = (self.cfg.provider or "openai").lower()
        self.client: LLMClient = client or self._resolve_client(self.cfg)

    def _resolve_client(self, cfg: LLMConfig) -> LLMClient:
        p = self.provider

        if p == "openai":
            if not cfg.openai_api_key:
                raise ValueError("Missing OPENAI_API_KEY")
            return OpenAIClient(cfg.openai_api_key, cfg.openai_timeout_s, retry=cfg.retry)

        if p == "anthropic":
            if not cfg.anthropic_api_key:
                raise ValueError("Missing ANTHROPIC_API_KEY")
            return AnthropicClient(cfg.anthropic_api_key, cfg.anthropic_timeout_s, retry=cfg.retry)

        if p == "gemini":
            # Vertex AI authenticates via GOOGLE_APPLICATION_CREDENTIALS
            return GeminiClient(project_id=cfg.gcp_project_id, location=cfg.gcp_location)

        raise ValueError(f"Unsupported AI_PROVIDER: {cfg.provider}")

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Raw model text; callers parse it so they can report their own stage on failure."""
        m = model or self.cfg.default_model()
        logger.debug("llm call provider=%s model=%s", self.provider, m)
        return await self.client.generate_json(
            system=system,
            user=user,
            model=m,
            temperature=self.cfg.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.cfg.max_tokens,
        )


# Optional: shared singleton
_llm_singleton: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    global _llm_singleton
    if _llm_singleton is None:
        _llm_singleton = LLMService()
    return _llm_singleton
