"""
Completion backend adapters.

One adapter per BackendKind; the orchestrator only uses the BackendAdapter
interface and obtains instances through `create_adapter`.
"""
from typing import Optional

import aiohttp

from models import BackendKind

from .anthropic import AnthropicAdapter
from .azure import AzureOpenAIAdapter
from .base import BackendAdapter
from .gemini import GeminiAdapter
from .ollama import OllamaAdapter
from .openai import CustomAdapter, OpenAIAdapter

ADAPTERS: dict[BackendKind, type[BackendAdapter]] = {
    BackendKind.OPENAI: OpenAIAdapter,
    BackendKind.ANTHROPIC: AnthropicAdapter,
    BackendKind.OLLAMA: OllamaAdapter,
    BackendKind.GEMINI: GeminiAdapter,
    BackendKind.AZURE: AzureOpenAIAdapter,
    BackendKind.CUSTOM: CustomAdapter,
}


def create_adapter(kind: BackendKind, session: Optional[aiohttp.ClientSession] = None) -> BackendAdapter:
    """Instantiate the adapter for a backend kind."""
    return ADAPTERS[kind](session=session)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "AzureOpenAIAdapter",
    "BackendAdapter",
    "CustomAdapter",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "create_adapter",
]
