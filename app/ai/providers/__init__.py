"""Provider implementations."""

from app.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse
from app.ai.providers.openrouter import OpenRouterModel, OpenRouterProvider

__all__ = ["AIModel", "ModelResponse", "SimpleModelResponse", "Provider", "OpenRouterModel", "OpenRouterProvider"]
