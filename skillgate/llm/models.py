from __future__ import annotations

import math

MODEL_SERVICE_MAP: dict[str, str] = {
    "Claude Opus 4.6": "Anthropic",
    "Claude Opus 4.5": "Anthropic",
    "Claude Sonnet 4.5": "Anthropic",
    "Claude Haiku 4.5": "Anthropic",
    "GPT-5.2": "OpenAI",
    "o3-pro": "OpenAI",
    "o4-mini": "OpenAI",
    "Gemini 3 Pro": "Google",
    "Gemini 2.5 Flash": "Google",
    "DeepSeek R1": "DeepSeek",
    "Llama 3.3": "Meta",
    "Grok 4": "xAI",
}

MODEL_API_IDS: dict[str, str] = {
    "Claude Opus 4.6": "claude-opus-4-6",
    "Claude Opus 4.5": "claude-opus-4-5-20251101",
    "Claude Sonnet 4.5": "claude-sonnet-4-5-20250929",
    "Claude Haiku 4.5": "claude-haiku-4-5-20251001",
    "GPT-5.2": "gpt-5.2",
    "o3-pro": "o3-pro",
    "o4-mini": "o4-mini",
    "Gemini 3 Pro": "gemini-3.0-pro",
    "Gemini 2.5 Flash": "gemini-2.5-flash",
    "DeepSeek R1": "deepseek-reasoner",
    "Llama 3.3": "llama-3.3-70b",
    "Grok 4": "grok-4",
}

# USD per 1M tokens: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "Claude Opus 4.6": (5.0, 25.0),
    "Claude Opus 4.5": (5.0, 25.0),
    "Claude Sonnet 4.5": (3.0, 15.0),
    "Claude Haiku 4.5": (0.80, 4.0),
    "GPT-5.2": (10.0, 30.0),
    "o3-pro": (20.0, 80.0),
    "o4-mini": (1.10, 4.40),
    "Gemini 3 Pro": (1.25, 5.0),
    "Gemini 2.5 Flash": (0.15, 0.60),
    "DeepSeek R1": (0.55, 2.19),
    "Llama 3.3": (0.60, 0.60),
    "Grok 4": (3.0, 15.0),
}

def service_for_model(model: str) -> str | None:
    return MODEL_SERVICE_MAP.get(model)


def api_model_id(model: str) -> str:
    return MODEL_API_IDS.get(model, model)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_rate, output_rate = MODEL_COSTS.get(model, (0.0, 0.0))
    return input_tokens / 1_000_000 * input_rate + output_tokens / 1_000_000 * output_rate
