from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

import httpx

from skillgate.llm.exceptions import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 4096


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class LLMProvider(Protocol):
    service: str

    def complete(self, messages: list[ChatMessage], api_key: str, model_id: str, system: str | None = None) -> str:
        ...


def _sse_data(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data or data == "[DONE]":
            continue
        try:
            event = json.loads(data)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


class _StreamingProvider:
    service = "unknown"

    def __init__(self, http: httpx.Client):
        self.http = http

    def _stream(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Iterator[dict[str, Any]]:
        try:
            with self.http.stream("POST", url, headers=headers, json=body) as response:
                if response.status_code in (401, 403):
                    raise ProviderAuthError(f"{self.service} rejected the API key ({response.status_code})")
                if response.status_code >= 400:
                    response.read()
                    raise ProviderResponseError(f"{self.service} API {response.status_code}: {response.text[:500]}")
                yield from _sse_data(response.iter_lines())
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.service} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"{self.service} unreachable: {exc}") from exc


class AnthropicProvider(_StreamingProvider):
    service = "Anthropic"
    url = "https://api.anthropic.com/v1/messages"

    def complete(self, messages: list[ChatMessage], api_key: str, model_id: str, system: str | None = None) -> str:
        body: dict[str, Any] = {
            "model": model_id,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "stream": True,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if system:
            body["system"] = system
        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        parts: list[str] = []
        for event in self._stream(self.url, headers, body):
            if event.get("type") == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    parts.append(text)
            elif event.get("type") == "error":
                raise ProviderResponseError(f"Anthropic stream error: {event.get('error')}")
        return "".join(parts)


class OpenAICompatibleProvider(_StreamingProvider):
    def __init__(self, http: httpx.Client, service: str, url: str):
        super().__init__(http)
        self.service = service
        self.url = url

    def complete(self, messages: list[ChatMessage], api_key: str, model_id: str, system: str | None = None) -> str:
        chat = [{"role": "system", "content": system}] if system else []
        chat.extend({"role": m.role, "content": m.content} for m in messages)
        body = {"model": model_id, "max_tokens": MAX_OUTPUT_TOKENS, "stream": True, "messages": chat}
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        parts: list[str] = []
        for event in self._stream(self.url, headers, body):
            choices = event.get("choices") or []
            if choices:
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    parts.append(content)
        return "".join(parts)


class GoogleProvider(_StreamingProvider):
    service = "Google"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def complete(self, messages: list[ChatMessage], api_key: str, model_id: str, system: str | None = None) -> str:
        body: dict[str, Any] = {
            "contents": [
                {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
                for m in messages
            ],
            "generationConfig": {"maxOutputTokens": MAX_OUTPUT_TOKENS},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        url = f"{self.base_url}/{model_id}:streamGenerateContent?alt=sse"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        parts: list[str] = []
        for event in self._stream(url, headers, body):
            for candidate in event.get("candidates") or []:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if part.get("text"):
                        parts.append(part["text"])
        return "".join(parts)


def default_providers(http: httpx.Client) -> dict[str, LLMProvider]:
    return {
        "Anthropic": AnthropicProvider(http),
        "OpenAI": OpenAICompatibleProvider(http, "OpenAI", "https://api.openai.com/v1/chat/completions"),
        "DeepSeek": OpenAICompatibleProvider(http, "DeepSeek", "https://api.deepseek.com/v1/chat/completions"),
        "xAI": OpenAICompatibleProvider(http, "xAI", "https://api.x.ai/v1/chat/completions"),
        "Google": GoogleProvider(http),
    }


__all__ = [
    "AnthropicProvider",
    "ChatMessage",
    "GoogleProvider",
    "LLMProvider",
    "OpenAICompatibleProvider",
    "ProviderError",
    "default_providers",
]
