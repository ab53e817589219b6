"""Async LLM access for the judgment analyzers.

One client fronts either provider; every call returns a parsed JSON object
or raises :class:`LLMCallError`.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from hackjury.config import Settings, get_settings

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.provider = (provider or settings.llm_provider).lower()
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or settings.llm_model or DEFAULT_MODELS[self.provider]
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self._client = self._sdk_client(api_key, base_url)

    def _sdk_client(self, api_key: str | None, base_url: str | None) -> Any:
        if self.provider == "anthropic":
            import anthropic
            return anthropic.AsyncAnthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))

        import openai
        kwargs: dict[str, Any] = {}
        key = api_key or os.environ.get("OPENAI_API_KEY")
        if key:
            kwargs["api_key"] = key
        url = base_url or os.environ.get("OPENAI_BASE_URL")
        if url:
            kwargs["base_url"] = url
        return openai.AsyncOpenAI(**kwargs)

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send one system+user exchange and return the answer as a JSON object."""
        try:
            if self.provider == "anthropic":
                text = await self._ask_anthropic(system, user)
            else:
                text = await self._ask_openai(system, user)
        except Exception as exc:
            log.warning("%s call failed (model=%s): %s", self.provider, self.model, exc)
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        return parse_json_object(text)

    async def _ask_anthropic(self, system: str, user: str) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return extract_json_text(response.content[0].text)

    async def _ask_openai(self, system: str, user: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"


def parse_json_object(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
    if not isinstance(parsed, dict):
        raise LLMCallError(f"LLM returned a JSON {type(parsed).__name__}, expected an object")
    return parsed


def extract_json_text(text: str) -> str:
    """Strip a ```json fence if the model wrapped its answer in one."""
    text = text.strip()
    m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
    return m.group(1) if m else text
