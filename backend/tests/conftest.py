"""
Shared fixtures: an in-memory service graph and a scripted provider registry.
"""
import asyncio
from typing import Dict, List, Union

import pytest

from consensus_ai.core.config import (
    LedgerSettings,
    OrchestratorSettings,
    SchedulerSettings,
    Settings,
)
from consensus_ai.services.consensus.orchestrator import ConsensusOrchestrator
from consensus_ai.services.ledger import AdmissionController, UsageLedger
from consensus_ai.services.providers import ProviderFailure, ProviderResponse
from consensus_ai.services.registry import JobRegistry
from consensus_ai.services.store import InMemoryStore
from consensus_ai.services.tiers import TierCatalog

TOPIC = "Impact of remote work on urban housing markets"
SOURCES = ["Remote work raised suburban demand.", "City rents fell in 2020 and recovered by 2022."]

Step = Union[str, ProviderFailure, float]


class FakeAdapter:
    def __init__(self, provider_id: str, timeout_seconds: float = 30.0):
        self.provider_id = provider_id
        self.timeout_seconds = timeout_seconds


class FakeProviders:
    """
    Provider registry stand-in driven by a script per provider.

    Each script step is a text (success), a ProviderFailure (raised) or a
    float (sleep that many seconds, then answer). The last step repeats.
    """

    def __init__(self, scripts: Dict[str, List[Step]], input_tokens: int = 100, output_tokens: int = 50):
        self.scripts = {provider_id: list(steps) for provider_id, steps in scripts.items()}
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[Dict[str, object]] = []
        self._adapters = {provider_id: FakeAdapter(provider_id) for provider_id in scripts}

    def ids(self) -> List[str]:
        return list(self.scripts)

    def get(self, provider_id: str) -> FakeAdapter:
        return self._adapters[provider_id]

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self.scripts

    def __len__(self) -> int:
        return len(self.scripts)

    def health(self) -> Dict[str, dict]:
        return {
            provider_id: {"model": "fake", "circuit_breaker": {"state": "closed"}}
            for provider_id in self.scripts
        }

    async def invoke(self, provider_id: str, prompt: str, max_tokens=None, temperature: float = 0.7):
        self.calls.append({"provider": provider_id, "prompt": prompt, "max_tokens": max_tokens})
        steps = self.scripts[provider_id]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, ProviderFailure):
            raise step
        text = f"{provider_id} says: {prompt[:20]}"
        if isinstance(step, float):
            await asyncio.sleep(step)
        else:
            text = step
        return ProviderResponse(
            provider_id=provider_id,
            model="fake",
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            latency_ms=1,
        )

    def calls_for(self, provider_id: str) -> List[Dict[str, object]]:
        return [call for call in self.calls if call["provider"] == provider_id]


def build_pipeline(providers, store=None, drafters=None, arbiter=None, quorum: int = 2, **orchestrator_kwargs):
    store = store or InMemoryStore()
    tiers = TierCatalog()
    ledger = UsageLedger(store, tiers, LedgerSettings())
    admission = AdmissionController(ledger)
    drafters = drafters or providers.ids()
    orchestrator = ConsensusOrchestrator(
        providers,
        store,
        ledger,
        drafters=drafters,
        arbiter=arbiter or drafters[0],
        settings=OrchestratorSettings(quorum=quorum, **orchestrator_kwargs),
    )
    registry = JobRegistry(store, ledger, admission, orchestrator, SchedulerSettings())
    return store, ledger, admission, orchestrator, registry


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger(store):
    return UsageLedger(store, TierCatalog(), LedgerSettings())


@pytest.fixture
def admission(ledger):
    return AdmissionController(ledger)


@pytest.fixture
def test_settings():
    return Settings(scheduler=SchedulerSettings(enabled=False))
