"""Azure OpenAI: OpenAI wire format behind deployment URLs and `api-key` auth."""
from urllib.parse import quote

import constants as C
from models import BackendKind, Profile

from .openai import OpenAIAdapter


class AzureOpenAIAdapter(OpenAIAdapter):
    """The profile's model id names the Azure deployment."""

    kind = BackendKind.AZURE

    def build_url(self, profile: Profile) -> str:
        deployment = quote(profile.model_id, safe="")
        return (
            f"{profile.endpoint}/openai/deployments/{deployment}"
            f"{C.API_CHAT_COMPLETIONS}?api-version={C.AZURE_API_VERSION}"
        )

    def build_headers(self, profile: Profile) -> dict:
        return {"Content-Type": "application/json", "api-key": profile.api_key}
