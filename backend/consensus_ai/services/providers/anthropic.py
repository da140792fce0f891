"""
Anthropic messages adapter.
"""
from typing import Any, Dict, Optional, Tuple

from consensus_ai.services.providers.base import ProviderAdapter

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    def endpoint(self) -> str:
        return "/messages"

    def headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.settings.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_payload(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "max_tokens": max_tokens,
            "temperature": min(temperature, 1.0),
            "messages": [{"role": "user", "content": prompt}],
        }

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[int], Optional[int]]:
        text = "".join(
            block["text"] for block in data["content"] if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return text, usage.get("input_tokens"), usage.get("output_tokens")
