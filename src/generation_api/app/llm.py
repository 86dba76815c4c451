from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Protocol
from urllib import error, request

from .settings import Settings

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    """Interface for the external text generation capability."""

    def generate(
        self,
        *,
        system_prompt: str,
        history: list[dict[str, str]],
        user_message: str,
        max_tokens: int,
        timeout_s: float,
    ) -> str: ...


class OpenAIChatCompletionsGenerator:
    """Small OpenAI generator using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 0,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate(
        self,
        *,
        system_prompt: str,
        history: list[dict[str, str]],
        user_message: str,
        max_tokens: int,
        timeout_s: float,
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(
            {"role": turn["role"], "content": turn["content"]}
            for turn in history
            if turn.get("role") in {"user", "assistant"} and turn.get("content")
        )
        messages.append({"role": "user", "content": user_message})
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        response_json = self._request_with_retry(payload, timeout_s=timeout_s)
        return self._extract_content(response_json)

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=openai model=%s url=%s timeout_s=%s turns=%d",
                self.model,
                url,
                timeout_s,
                len(payload.get("messages", [])),
            )
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=url,
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        if _trace_enabled():
            logger.warning("LLM trace response provider=openai model=%s status=ok", self.model)
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ValueError("OpenAI response content could not be parsed as text")


def build_generator_from_settings(settings: Settings) -> TextGenerator | None:
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsGenerator(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def _trace_enabled() -> bool:
    return os.getenv("GENERATION_LLM_TRACE", "0").strip() == "1"
