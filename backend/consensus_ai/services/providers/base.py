"""
Provider adapter contract and shared HTTP handling.

Every adapter turns ``invoke(prompt)`` into exactly one HTTP call guarded by
a per-call timeout and a circuit breaker. Adapters never retry; retry policy
belongs to the consensus pipeline. Failures are classified into:

- RateLimited: provider returned 429 (transient)
- Timeout: the call exceeded its deadline (transient)
- TransportError: network error, 5xx (transient), auth or other 4xx
  (permanent), or an open circuit breaker (transient)
- InvalidResponse: body missing, not JSON, or without usable text (permanent)

Subclasses only describe their API: endpoint, headers, request payload and
response parsing.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from consensus_ai.core.circuit_breaker import CircuitBreaker
from consensus_ai.core.config import ProviderSettings
from consensus_ai.core.logging import get_logger
from consensus_ai.services.estimator import count_text_tokens

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderResponse:
    provider_id: str
    model: str
    text: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderFailure(Exception):
    """A single provider call failed."""

    kind = "provider_failure"

    def __init__(
        self,
        provider_id: str,
        message: str,
        transient: bool,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
        self.message = message
        self.transient = transient
        self.status_code = status_code
        self.tokens_used = 0


class RateLimited(ProviderFailure):
    kind = "rate_limited"

    def __init__(self, provider_id: str, retry_after: Optional[float] = None):
        super().__init__(provider_id, "rate limited", transient=True, status_code=429)
        self.retry_after = retry_after


class Timeout(ProviderFailure):
    kind = "timeout"

    def __init__(self, provider_id: str, timeout_seconds: float):
        super().__init__(provider_id, f"no response within {timeout_seconds:g}s", transient=True)
        self.timeout_seconds = timeout_seconds


class TransportError(ProviderFailure):
    kind = "transport_error"


class InvalidResponse(ProviderFailure):
    kind = "invalid_response"

    def __init__(
        self,
        provider_id: str,
        message: str,
        status_code: Optional[int] = None,
        tokens_used: int = 0,
    ):
        super().__init__(provider_id, message, transient=False, status_code=status_code)
        # Usage the provider reported for a body we could not use; still billed
        self.tokens_used = tokens_used


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class ProviderAdapter(ABC):
    """Uniform async interface over one provider's text generation API."""

    def __init__(
        self,
        settings: ProviderSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings
        self.api_base = settings.api_base.rstrip("/")
        self.transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=f"provider_{settings.id}")

    @property
    def provider_id(self) -> str:
        return self.settings.id

    @property
    def timeout_seconds(self) -> float:
        return self.settings.timeout_seconds

    @abstractmethod
    def endpoint(self) -> str:
        """Path appended to the API base."""

    @abstractmethod
    def headers(self) -> Dict[str, str]: ...

    @abstractmethod
    def build_payload(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]: ...

    @abstractmethod
    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Optional[int], Optional[int]]:
        """Return (text, input_tokens, output_tokens); token counts may be None if unreported."""

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self.transport,
        ) as client:
            return await client.post(
                f"{self.api_base}{self.endpoint()}",
                headers={"Content-Type": "application/json", **self.headers()},
                json=payload,
            )

    async def invoke(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> ProviderResponse:
        """
        Send one prompt and return the generated text with token usage.

        Raises:
            ProviderFailure: one of RateLimited, Timeout, TransportError, InvalidResponse
        """
        if not self.circuit_breaker.allow_request():
            raise TransportError(self.provider_id, "circuit breaker open", transient=True)

        max_tokens = max_tokens or self.settings.max_output_tokens
        payload = self.build_payload(prompt, max_tokens, temperature)
        start = time.monotonic()

        try:
            try:
                response = await self._post(payload)
            except httpx.TimeoutException:
                raise Timeout(self.provider_id, self.timeout_seconds)
            except httpx.HTTPError as exc:
                raise TransportError(
                    self.provider_id,
                    f"{type(exc).__name__}: {exc}",
                    transient=True,
                ) from exc

            failure = self._classify_status(response)
            if failure is not None:
                raise failure
            text, input_tokens, output_tokens = self._parse(response)
        except ProviderFailure:
            self.circuit_breaker.record_failure()
            raise
        except asyncio.CancelledError:
            self.circuit_breaker.release()
            raise
        except Exception:
            self.circuit_breaker.record_failure()
            raise

        latency_ms = int((time.monotonic() - start) * 1000)
        self.circuit_breaker.record_success()

        # Fall back to local counting when the provider omits usage
        if input_tokens is None:
            input_tokens = count_text_tokens(prompt)
        if output_tokens is None:
            output_tokens = count_text_tokens(text)

        logger.debug(
            "provider_call_succeeded",
            provider=self.provider_id,
            model=self.settings.model,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        return ProviderResponse(
            provider_id=self.provider_id,
            model=self.settings.model,
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )

    def _classify_status(self, response: httpx.Response) -> Optional[ProviderFailure]:
        status = response.status_code
        if status < 400:
            return None
        if status == 429:
            return RateLimited(self.provider_id, retry_after=_retry_after(response))
        if status in (408, 504):
            return Timeout(self.provider_id, self.timeout_seconds)
        if status >= 500:
            return TransportError(self.provider_id, f"HTTP {status}", transient=True, status_code=status)
        return TransportError(self.provider_id, f"HTTP {status}", transient=False, status_code=status)

    def _parse(self, response: httpx.Response) -> Tuple[str, Optional[int], Optional[int]]:
        try:
            data = response.json()
        except ValueError as exc:
            raise InvalidResponse(self.provider_id, "response body is not JSON", response.status_code) from exc

        try:
            text, input_tokens, output_tokens = self.parse_response(data)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise InvalidResponse(
                self.provider_id,
                f"unexpected response shape: {type(exc).__name__}",
                response.status_code,
            ) from exc

        if not text or not text.strip():
            raise InvalidResponse(
                self.provider_id,
                "response contained no text",
                response.status_code,
                tokens_used=(input_tokens or 0) + (output_tokens or 0),
            )
        return text.strip(), input_tokens, output_tokens
