"""OpenRouter provider implementation using openai SDK."""

from __future__ import annotations

import logging
import os
from typing import Final

from openai import AsyncOpenAI

from app.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse

logger = logging.getLogger("app.ai.providers.openrouter")


class OpenRouterModel(AIModel):
  """OpenRouter chat-completions client for one model."""

  def __init__(self, name: str, api_key: str | None = None, base_url: str | None = None, *, temperature: float = 0.3) -> None:
    self.name: str = name
    self._temperature = temperature

    api_key = api_key or os.getenv("OPENROUTER_API_KEY")
    if not api_key:
      raise ValueError("OPENROUTER_API_KEY environment variable is required")

    # OpenRouter uses the OpenAI-compatible API; we add optional attribution headers.
    default_headers = {}
    referer = os.getenv("OPENROUTER_HTTP_REFERER")
    if referer:
      default_headers["HTTP-Referer"] = referer
    title = os.getenv("OPENROUTER_TITLE")
    if title:
      default_headers["X-Title"] = title

    self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or "https://openrouter.ai/api/v1", default_headers=default_headers or None)

  async def generate(self, prompt: str, *, system: str | None = None) -> ModelResponse:
    """Generate a text response from OpenRouter."""
    messages = []
    if system:
      messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    response = await self._client.chat.completions.create(model=self.name, messages=messages, temperature=self._temperature)

    content = response.choices[0].message.content or ""
    logger.debug("OpenRouter response (%s):\n%s", self.name, content)
    usage = None

    if response.usage:
      usage = {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}

    return SimpleModelResponse(content=content, usage=usage)


class OpenRouterProvider(Provider):
  """OpenRouter provider."""

  _DEFAULT_MODEL: Final[str] = "openai/gpt-oss-20b:free"
  _AVAILABLE_MODELS: Final[set[str]] = {
    "openai/gpt-oss-20b:free",
    "openai/gpt-oss-120b:free",
    "meta-llama/llama-3.3-70b-instruct:free",
    "deepseek/deepseek-r1-0528:free",
    "google/gemma-3-27b-it:free",
    "xiaomi/mimo-v2-flash:free",
  }

  def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
    self.name: str = "openrouter"
    self._api_key = api_key
    self._base_url = base_url

  @classmethod
  def available_models(cls) -> list[str]:
    return sorted(cls._AVAILABLE_MODELS)

  def get_model(self, model: str | None = None) -> AIModel:
    """Return an OpenRouter model client."""
    model_name = model or self._DEFAULT_MODEL
    if model_name not in self._AVAILABLE_MODELS:
      raise ValueError(f"Unsupported OpenRouter model '{model_name}'.")
    return OpenRouterModel(model_name, api_key=self._api_key, base_url=self._base_url)
