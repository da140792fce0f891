"""
Service wiring and FastAPI dependencies.

build_services() is the only place that turns Settings into live objects;
routes reach them through request.app.state.services.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from consensus_ai.core.config import Settings
from consensus_ai.core.logging import get_logger, set_account_id
from consensus_ai.models.domain import Account
from consensus_ai.services.consensus.orchestrator import ConsensusOrchestrator
from consensus_ai.services.ledger import AdmissionController, UsageLedger
from consensus_ai.services.notifications import Notifier, build_notifier
from consensus_ai.services.providers import ProviderRegistry, build_provider_registry
from consensus_ai.services.registry import JobRegistry
from consensus_ai.services.scheduler import LeaseManager, RedisLeaseManager, Scheduler
from consensus_ai.services.store import InMemoryStore, Store, SupabaseStore
from consensus_ai.services.tiers import DEFAULT_TIERS, TierCatalog

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Store
    tiers: TierCatalog
    ledger: UsageLedger
    admission: AdmissionController
    providers: ProviderRegistry
    orchestrator: ConsensusOrchestrator
    registry: JobRegistry
    notifier: Notifier
    scheduler: Scheduler


def build_store(settings: Settings) -> Store:
    if settings.store_backend == "supabase":
        return SupabaseStore.from_credentials(settings.supabase_url, settings.supabase_key)
    return InMemoryStore()


def build_services(
    settings: Settings,
    store: Optional[Store] = None,
    providers: Optional[ProviderRegistry] = None,
    notifier: Optional[Notifier] = None,
    leases: Optional[LeaseManager] = None,
) -> Services:
    """Assemble the service graph; any collaborator can be swapped in (tests)."""
    store = store or build_store(settings)
    providers = providers or build_provider_registry(settings.providers)
    tiers = TierCatalog(DEFAULT_TIERS)
    ledger = UsageLedger(store, tiers, settings.ledger)
    admission = AdmissionController(ledger, settings.ledger)

    drafters = settings.drafting_providers() or providers.ids()
    arbiter = settings.arbiter_provider() or (providers.ids()[0] if len(providers) else "")
    orchestrator = ConsensusOrchestrator(
        providers,
        store,
        ledger,
        drafters=drafters,
        arbiter=arbiter,
        settings=settings.orchestrator,
    )
    registry = JobRegistry(store, ledger, admission, orchestrator, settings.scheduler)
    notifier = notifier or build_notifier(settings.notification_webhook_url)
    scheduler = Scheduler(
        registry,
        ledger,
        notifier,
        store,
        leases=leases or RedisLeaseManager(),
        settings=settings.scheduler,
    )

    logger.info(
        "services_built",
        store_backend=type(store).__name__,
        providers=providers.ids(),
        drafters=drafters,
        arbiter=arbiter or None,
    )
    return Services(
        settings=settings,
        store=store,
        tiers=tiers,
        ledger=ledger,
        admission=admission,
        providers=providers,
        orchestrator=orchestrator,
        registry=registry,
        notifier=notifier,
        scheduler=scheduler,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_account(
    services: Services = Depends(get_services),
    x_account_id: Optional[str] = Header(default=None),
    x_account_tier: Optional[str] = Header(default=None),
    x_account_email: Optional[str] = Header(default=None),
) -> Account:
    """
    Resolve the caller from headers set by the upstream auth layer.

    Raises:
        HTTPException: 401 without an account id, 400 for an unknown tier
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Account-ID header")
    account_id = x_account_id.strip()
    set_account_id(account_id)
    try:
        return await services.ledger.ensure_account(account_id, tier=x_account_tier, email=x_account_email)
    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown subscription tier: {x_account_tier}")
