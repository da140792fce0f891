"""
Cohere chat adapter (Command R family).
"""
from typing import Any, Dict, Optional, Tuple

from consensus_ai.services.providers.base import ProviderAdapter


class CohereAdapter(ProviderAdapter):
    def endpoint(self) -> str:
        return "/chat"

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.api_key}"}

    def build_payload(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "message": prompt,
            "max_tokens": max_tokens,
            "temperature": min(temperature, 1.0),
        }

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[int], Optional[int]]:
        meta = data.get("meta") or {}
        tokens = meta.get("tokens") or meta.get("billed_units") or {}
        return data["text"], tokens.get("input_tokens"), tokens.get("output_tokens")
