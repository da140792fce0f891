"""
Google Gemini generateContent adapter.
"""
from typing import Any, Dict, Optional, Tuple

from consensus_ai.services.providers.base import ProviderAdapter


class GoogleAdapter(ProviderAdapter):
    def endpoint(self) -> str:
        return f"/models/{self.settings.model}:generateContent"

    def headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.settings.api_key}

    def build_payload(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": temperature,
            },
        }

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[int], Optional[int]]:
        parts = data["candidates"][0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts)
        usage = data.get("usageMetadata") or {}
        return text, usage.get("promptTokenCount"), usage.get("candidatesTokenCount")
