from __future__ import annotations

from repolens_core.providers.anthropic import AnthropicClient
from repolens_core.providers.base import BaseModelClient
from repolens_core.providers.openai import OpenAIClient


def create_model_client(config: dict) -> BaseModelClient:
    model = config["model"]
    if model == "anthropic":
        return AnthropicClient(api_key=config.get("anthropic_api_key"), model=config.get("model_name"))
    if model == "openai":
        return OpenAIClient(api_key=config.get("openai_api_key"), model=config.get("model_name"))
    raise ValueError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")
