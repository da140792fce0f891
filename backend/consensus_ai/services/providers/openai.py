"""
OpenAI chat-completions adapter.
"""
from typing import Any, Dict, Optional, Tuple

from consensus_ai.services.providers.base import ProviderAdapter


class OpenAIAdapter(ProviderAdapter):
    def endpoint(self) -> str:
        return "/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.api_key}"}

    def build_payload(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[int], Optional[int]]:
        text = data["choices"][0]["message"]["content"]
        usage = data.get("usage") or {}
        return text, usage.get("prompt_tokens"), usage.get("completion_tokens")
