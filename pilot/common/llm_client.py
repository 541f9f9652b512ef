"""Unified LLM client — one call shape for every provider, with cost and latency on each result.

Errors never raise out of ``generate``/``generate_json``; callers get a dict
with ``error=True`` and a ``message`` and decide whether to walk to the next
model in their chain.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from pilot.common.errors import LLMError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

# USD per million tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-3-5-haiku-latest": (0.8, 4.0),
    "deepseek-chat": (0.27, 1.10),
    "deepseek-reasoner": (0.55, 2.19),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
}
FALLBACK_PRICING = (3.0, 15.0)

# Backoff schedule per retryable HTTP status.
RETRY_DELAYS: dict[int, tuple[float, ...]] = {
    429: (2.0, 4.0, 8.0),
    500: (3.0,),
    502: (3.0,),
    503: (3.0,),
    529: (3.0,),
}


@dataclass(frozen=True)
class Provider:
    name: str
    key_env: str
    url: str
    style: str  # "anthropic" | "openai"


PROVIDERS: dict[str, Provider] = {
    "anthropic": Provider("anthropic", "ANTHROPIC_API_KEY", "https://api.anthropic.com/v1/messages", "anthropic"),
    "deepseek": Provider("deepseek", "DEEPSEEK_API_KEY", "https://api.deepseek.com/v1/chat/completions", "openai"),
    "openai": Provider("openai", "OPENAI_API_KEY", "https://api.openai.com/v1/chat/completions", "openai"),
}


def provider_for(model: str) -> Provider:
    lowered = model.lower()
    if "deepseek" in lowered:
        return PROVIDERS["deepseek"]
    if lowered.startswith(("gpt", "o1", "o3")):
        return PROVIDERS["openai"]
    return PROVIDERS["anthropic"]


def estimate_cost(model: str, usage: dict[str, int]) -> float:
    """Estimate call cost in USD from provider usage counters."""
    in_price, out_price = MODEL_PRICING.get(model, FALLBACK_PRICING)
    input_tokens = usage.get("input_tokens", usage.get("prompt_tokens", 0))
    output_tokens = usage.get("output_tokens", usage.get("completion_tokens", 0))
    return (input_tokens * in_price + output_tokens * out_price) / 1_000_000


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply, tolerating code fences and surrounding prose.

    Raises ValueError when nothing parseable is found.
    """
    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braced = re.search(r"\{[\s\S]*\}", text)
    if braced:
        candidates.append(braced.group(0))
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError(f"No JSON found in response: {text[:200]}")


def error_result(message: str, model: str = "", provider: str = "", cost: float = 0.0) -> dict[str, Any]:
    return {"error": True, "message": message, "provider": provider, "model": model,
            "content": "", "cost": cost, "latency_ms": 0}


# ─── Wire formats ─────────────────────────────────────────────────────────────

def _anthropic_request(provider: Provider, api_key: str, model: str, system: str,
                       messages: list[dict], temperature: float, max_tokens: int) -> tuple[dict, dict]:
    body: dict[str, Any] = {"model": model, "max_tokens": max_tokens, "temperature": temperature,
                            "messages": messages}
    if system:
        body["system"] = system
    headers = {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    return headers, body


def _openai_request(provider: Provider, api_key: str, model: str, system: str,
                    messages: list[dict], temperature: float, max_tokens: int) -> tuple[dict, dict]:
    chat = ([{"role": "system", "content": system}] if system else []) + messages
    body = {"model": model, "messages": chat, "temperature": temperature, "max_tokens": max_tokens}
    return {"Authorization": f"Bearer {api_key}"}, body


def _anthropic_reply(data: dict) -> str:
    return "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")


def _openai_reply(data: dict) -> str:
    return data["choices"][0]["message"]["content"] or ""


_FORMATS = {
    "anthropic": (_anthropic_request, _anthropic_reply),
    "openai": (_openai_request, _openai_reply),
}


class LLMClient:
    """Async multi-provider client.

    Every result carries ``cost`` (USD) and ``latency_ms`` so callers can feed
    the cost ledger and the model performance table.
    """

    def __init__(
        self,
        default_model: Optional[str] = None,
        timeout: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.default_model = default_model or os.getenv("LLM_DEFAULT_MODEL", "claude-sonnet-4-20250514")
        self.timeout = timeout
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    @classmethod
    def from_config(cls, config) -> "LLMClient":
        return cls(default_model=config.model_chains["standard"][-1], timeout=config.llm_timeout_s)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ─── Public API ───────────────────────────────────────────────────

    async def generate(
        self,
        *,
        system: str = "",
        messages: Optional[list[dict]] = None,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        """Generate a text response. Returns {"content": str, ...} or an error dict."""
        model = model or self.default_model
        provider = provider_for(model)
        if prompt and not messages:
            messages = [{"role": "user", "content": prompt}]

        api_key = os.environ.get(provider.key_env, "")
        if not api_key:
            return error_result(f"{provider.key_env} not set", model, provider.name)

        build, parse = _FORMATS[provider.style]
        headers, body = build(provider, api_key, model, system, messages or [], temperature, max_tokens)

        started = time.monotonic()
        try:
            data = await self._post_with_retries(provider, headers, body)
            content = parse(data)
        except LLMError as e:
            logger.warning(f"{provider.name} call for {model} failed: {e}")
            return error_result(str(e), model, provider.name)
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            logger.error(f"Unexpected {provider.name} response for {model}: {e}")
            return error_result(f"Unexpected error from {provider.name}: {e}", model, provider.name)

        usage = data.get("usage") or {}
        return {
            "content": content,
            "model": model,
            "provider": provider.name,
            "usage": usage,
            "cost": estimate_cost(model, usage),
            "latency_ms": int((time.monotonic() - started) * 1000),
        }

    async def generate_json(
        self,
        *,
        prompt: str,
        system: str = "",
        temperature: float = 0.3,
        model: Optional[str] = None,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        """Generate and parse a JSON reply. Returns {"content": <parsed>, ...} or an error dict.

        A reply that is not JSON still reports the spend it caused.
        """
        result = await self.generate(system=system, prompt=prompt, model=model,
                                     temperature=temperature, max_tokens=max_tokens)
        if result.get("error"):
            return result
        try:
            result["content"] = extract_json(result["content"])
        except ValueError as e:
            failed = error_result(str(e), result["model"], result["provider"], result["cost"])
            failed["latency_ms"] = result["latency_ms"]
            return failed
        return result

    # ─── Transport ────────────────────────────────────────────────────

    async def _post_with_retries(self, provider: Provider, headers: dict, body: dict) -> dict:
        attempt = 0
        while True:
            try:
                resp = await self._http.post(provider.url, headers=headers, json=body, timeout=self.timeout)
            except httpx.TimeoutException:
                if attempt:
                    raise LLMError(f"Timed out twice talking to {provider.name}")
                attempt += 1
                logger.warning(f"Timeout from {provider.name}, retrying once")
                continue

            if resp.status_code < 400:
                return resp.json()
            if resp.status_code == 401:
                raise LLMError(f"API key invalid for {provider.name}")

            delays = RETRY_DELAYS.get(resp.status_code, ())
            if attempt >= len(delays):
                raise LLMError(f"HTTP {resp.status_code} from {provider.name}")
            delay = delays[attempt]
            attempt += 1
            logger.warning(f"HTTP {resp.status_code} from {provider.name}, retry {attempt}/{len(delays)} in {delay}s")
            await self._sleep(delay)
