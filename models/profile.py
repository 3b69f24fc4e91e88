"""
Backend profiles: one named backend configuration each.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import constants as C


class BackendKind(Enum):
    """Closed set of supported completion backends."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    GEMINI = "gemini"
    AZURE = "azure"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> "BackendKind":
        """Map a config string (including common aliases) to a kind.

        Raises:
            ValueError: If the name is not a known backend.
        """
        key = str(value or "").strip().lower()
        key = _BACKEND_ALIASES.get(key, key)
        return cls(key)


_BACKEND_ALIASES = {
    "openai-compatible": "openai",
    "deepseek": "openai",
    "lmstudio": "openai",
    "claude": "anthropic",
    "local": "ollama",
    "azure-openai": "azure",
    "azure_openai": "azure",
    "google": "gemini",
    "custom-compatible": "custom",
}


@dataclass(frozen=True)
class Profile:
    """Immutable backend configuration used for a whole turn."""
    name: str
    backend_kind: BackendKind
    model_id: str
    api_key: str = ""
    endpoint: str = ""
    temperature: float = C.DEFAULT_TEMPERATURE
    max_tokens: int = C.DEFAULT_MAX_TOKENS
    context_window_size: Optional[int] = None
    summarize_threshold: float = C.SUMMARIZE_THRESHOLD

    def get_context_window_size(self) -> int:
        """Configured window, else the backend's typical default."""
        if self.context_window_size:
            return self.context_window_size
        return C.CONTEXT_WINDOW_DEFAULTS.get(self.backend_kind.value, 128000)
