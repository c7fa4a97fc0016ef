"""
Model Layer - LLM Abstraction & Policy Enforcement.

Responsibility:
- Abstract specific LLM client details (Ollama, OpenAI-compatible, Anthropic)
- Enforce timeouts and retries with backoff
- Fallback logic (switch models when the configured one is missing)
- JSON validation helper

This is the ONLY place where LLMs are called.
"""

import asyncio
import json
import logging
import os
import random
import re
from typing import Any

import httpx

from observability.logger import Observability
from shared.errors import ExternalCallError
from shared.models import ModelPolicy

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ModelSelector:
    """Manages async LLM calls with reliability policies."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        provider: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        configured_base_url = os.getenv("MODEL_BASE_URL", "").strip()
        self.base_url = (configured_base_url or base_url).rstrip("/")
        provider_raw = (provider or os.getenv("MODEL_PROVIDER", "auto")).strip().lower()
        if provider_raw not in {"auto", "ollama", "openai_compatible", "anthropic"}:
            provider_raw = "auto"
        self.provider = self._resolve_provider(provider_raw, self.base_url)
        self.api_key = (api_key if api_key is not None else os.getenv("MODEL_API_KEY", "")).strip()
        if not self.api_key:
            if self.provider == "anthropic":
                self.api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
            elif self.provider == "openai_compatible":
                self.api_key = os.getenv("OPENAI_API_KEY", "").strip()

        base_headers: dict[str, str] = {}
        if self.provider == "openai_compatible" and self.api_key:
            base_headers["Authorization"] = f"Bearer {self.api_key}"

        # Persistent client with connection pooling
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=60.0,  # default, overridden by policy
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            headers=base_headers,
            transport=transport,
        )

    async def generate(
        self,
        messages: list[dict],
        policy: ModelPolicy,
        session_id: str | None = None,
    ) -> dict[str, Any] | str:
        """
        Execute LLM generation with retry/timeout policy.
        Returns the parsed JSON object if json_mode=True, else the raw text.
        Raises ExternalCallError once retries are exhausted.
        """
        obs = Observability(session_id)

        attempts = max(1, policy.max_retries)
        last_error: Exception | None = None
        active_policy = policy

        for attempt in range(1, attempts + 1):
            try:
                with obs.measure(
                    "model_call",
                    {
                        "model": active_policy.model_name,
                        "attempt": attempt,
                        "provider": self.provider,
                    },
                ):
                    response_text = await asyncio.wait_for(
                        self._call_model(messages, active_policy),
                        timeout=active_policy.timeout_seconds,
                    )

                if active_policy.json_mode:
                    return self._parse_json(response_text)
                return response_text

            except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning(
                    "Model call failed (attempt %d/%d): %s",
                    attempt,
                    attempts,
                    e,
                )
                fallback_model = await self._fallback_model_for_error(e, active_policy.model_name)
                if fallback_model:
                    logger.warning(
                        "Switching to fallback model '%s' after error on '%s'.",
                        fallback_model,
                        active_policy.model_name,
                    )
                    active_policy = active_policy.model_copy(update={"model_name": fallback_model})
                    continue
                if attempt < attempts and self._is_transient(e):
                    delay = policy.backoff_seconds * (2 ** (attempt - 1)) + random.uniform(0.0, policy.backoff_seconds)
                    await asyncio.sleep(delay)
                    continue
                break

        obs.log_event(
            "model_failure",
            {"error": str(last_error), "policy": active_policy.model_dump()},
            level="ERROR",
        )
        status_code = None
        if isinstance(last_error, httpx.HTTPStatusError) and last_error.response is not None:
            status_code = last_error.response.status_code
        raise ExternalCallError(
            "model",
            f"{active_policy.model_name}: {last_error or 'unknown failure'}",
            retryable=last_error is not None and self._is_transient(last_error),
            status_code=status_code,
        ) from last_error

    def _is_transient(self, error: Exception) -> bool:
        if isinstance(error, (asyncio.TimeoutError, httpx.TransportError)):
            return True
        if isinstance(error, httpx.HTTPStatusError) and error.response is not None:
            return error.response.status_code in (429, 500, 502, 503, 504)
        # Malformed JSON from the model: asking again usually helps.
        return isinstance(error, ValueError)

    def _resolve_provider(self, provider_raw: str, base_url: str) -> str:
        if provider_raw != "auto":
            return provider_raw

        lowered = (base_url or "").strip().lower()
        if "anthropic.com" in lowered:
            return "anthropic"
        if "openai.com" in lowered or lowered.endswith("/v1"):
            return "openai_compatible"
        return "ollama"

    async def _call_model(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level model API call dispatching by configured provider."""
        if self.provider == "anthropic":
            return await self._call_anthropic_messages(messages, policy)
        if self.provider == "openai_compatible":
            return await self._call_openai_chat(messages, policy)
        return await self._call_ollama(messages, policy)

    async def _call_ollama(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Ollama-first, OpenAI-compatible fallback."""
        try:
            return await self._call_ollama_chat(messages, policy)
        except httpx.HTTPStatusError as e:
            # Some local providers expose only OpenAI-compatible APIs (/v1/chat/completions).
            if e.response is not None and e.response.status_code == 404 and "model" not in e.response.text.lower():
                logger.info("Ollama endpoint not found; trying OpenAI-compatible chat endpoint.")
                return await self._call_openai_chat(messages, policy)
            raise

    async def _call_anthropic_messages(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level Anthropic /v1/messages call."""
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY (or MODEL_API_KEY) is required when MODEL_PROVIDER=anthropic.")

        payload_messages: list[dict[str, str]] = []
        system_parts: list[str] = []
        for message in messages:
            role = str(message.get("role", "user")).strip().lower()
            text = str(message.get("content", "")).strip()
            if not text:
                continue
            if role == "system":
                system_parts.append(text)
                continue
            if role not in {"user", "assistant"}:
                role = "user"
            payload_messages.append({"role": role, "content": text})

        if not payload_messages:
            payload_messages = [{"role": "user", "content": "Hello"}]

        system_prompt = "\n\n".join(system_parts).strip()
        if policy.json_mode:
            json_guard = "Return ONLY a valid JSON object."
            system_prompt = f"{system_prompt}\n\n{json_guard}".strip() if system_prompt else json_guard

        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": payload_messages,
            "temperature": policy.temperature,
            "max_tokens": policy.max_tokens,
        }
        if system_prompt:
            payload["system"] = system_prompt

        response = await self._client.post(
            "/v1/messages",
            json=payload,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
            },
            timeout=policy.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()
        text_parts: list[str] = []
        for block in data.get("content") or []:
            if isinstance(block, dict) and str(block.get("type", "")).strip() == "text":
                text_value = str(block.get("text", "")).strip()
                if text_value:
                    text_parts.append(text_value)
        if not text_parts:
            raise ValueError("Anthropic response missing text content")
        return "\n".join(text_parts)

    async def _call_ollama_chat(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level Ollama /api/chat call."""
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": messages,
            "stream": False,
            "keep_alive": "10m",
            "options": {
                "temperature": policy.temperature,
                "num_ctx": 8192,
                "num_predict": policy.max_tokens,
            },
        }
        if policy.json_mode:
            payload["format"] = "json"

        response = await self._client.post("/api/chat", json=payload, timeout=policy.timeout_seconds)
        response.raise_for_status()
        return response.json().get("message", {}).get("content", "")

    async def _call_openai_chat(self, messages: list[dict], policy: ModelPolicy) -> str:
        """OpenAI-compatible /v1/chat/completions call."""
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": messages,
            "temperature": policy.temperature,
            "max_tokens": policy.max_tokens,
            "stream": False,
        }
        if policy.json_mode:
            payload["response_format"] = {"type": "json_object"}

        path = "/chat/completions" if self.base_url.endswith("/v1") else "/v1/chat/completions"
        response = await self._client.post(path, json=payload, timeout=policy.timeout_seconds)
        response.raise_for_status()
        choices = response.json().get("choices") or []
        if not choices:
            raise ValueError("OpenAI-compatible response missing choices")
        message = choices[0].get("message") or {}
        return str(message.get("content", ""))

    async def _fallback_model_for_error(self, error: Exception, current_model: str) -> str | None:
        if not isinstance(error, httpx.HTTPStatusError):
            return None
        if error.response is None or error.response.status_code != 404:
            return None
        body_l = (error.response.text or "").lower()
        if "model" not in body_l:
            return None
        if "not found" not in body_l and "not_found" not in body_l:
            return None
        preferred_family = None
        current_l = str(current_model or "").strip().lower()
        for family in ("haiku", "sonnet", "opus"):
            if family in current_l:
                preferred_family = family
                break
        return await self._first_available_model(exclude=current_model, preferred_family=preferred_family)

    async def _first_available_model(self, exclude: str, preferred_family: str | None = None) -> str | None:
        def pick_from_names(names: list[str]) -> str | None:
            filtered = [name for name in names if name and name != exclude]
            if not filtered:
                return None
            if preferred_family:
                for name in filtered:
                    if preferred_family in name.lower():
                        return name
            return filtered[0]

        for path, list_key, name_key in (("/api/tags", "models", "name"), ("/v1/models", "data", "id")):
            try:
                r = await self._client.get(path, timeout=5.0)
            except httpx.HTTPError as e:
                logger.debug("Model listing %s unavailable: %s", path, e)
                continue
            if r.status_code != 200:
                continue
            try:
                items = r.json().get(list_key) or []
            except ValueError:
                continue
            names = [str(item.get(name_key, "")).strip() for item in items if isinstance(item, dict)]
            picked = pick_from_names(names)
            if picked:
                return picked
        return None

    def _parse_json(self, text: str) -> dict[str, Any]:
        """Parse JSON response, handling common markdown issues."""
        clean_text = text.strip()
        fenced = _FENCE_RE.match(clean_text)
        if fenced:
            clean_text = fenced.group(1)

        try:
            parsed = json.loads(clean_text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON from model: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("Model returned JSON that is not an object")
        return parsed

    async def aclose(self) -> None:
        """Close persistent connections."""
        await self._client.aclose()
