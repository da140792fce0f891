"""
Service configuration.

Configuration is read once at startup by ``load_settings()`` (after
python-dotenv has loaded ``.env``) and injected into the services that need
it. Nothing below the composition root reads the environment at call time.
"""
import os
from typing import List, Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

ProviderKind = Literal["openai", "anthropic", "google", "cohere"]

# Provider id -> (kind, default model, default API base)
PROVIDER_DEFAULTS = {
    "openai": ("openai", "gpt-4o", "https://api.openai.com/v1"),
    "anthropic": ("anthropic", "claude-3-5-sonnet-latest", "https://api.anthropic.com/v1"),
    "google": ("google", "gemini-1.5-pro", "https://generativelanguage.googleapis.com/v1beta"),
    "cohere": ("cohere", "command-r-plus", "https://api.cohere.com/v1"),
}


class ProviderSettings(BaseModel):
    """Credentials and call limits for one provider endpoint."""

    id: str
    kind: ProviderKind
    model: str
    api_key: str
    api_base: str
    timeout_seconds: float = Field(default=45.0, ge=30.0, le=60.0)
    max_output_tokens: int = Field(default=2000, gt=0)


class OrchestratorSettings(BaseModel):
    drafters: List[str] = Field(default_factory=list)  # empty = every configured provider
    arbiter: Optional[str] = None  # None = first configured provider
    quorum: int = Field(default=2, ge=1)
    arbiter_retries: int = Field(default=1, ge=0)
    max_concurrent_calls: int = Field(default=8, ge=1)
    stall_grace_seconds: float = Field(default=5.0, ge=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class LedgerSettings(BaseModel):
    overage_tolerance: float = Field(default=0.5, ge=0.0, le=1.0)
    max_overage_ratio: float = Field(default=1.5, ge=1.0)
    conflict_retries: int = Field(default=5, ge=1)
    default_tier: str = "starter"


class SchedulerSettings(BaseModel):
    enabled: bool = True
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    alert_threshold: float = Field(default=0.75, gt=0)
    overage_threshold: float = Field(default=1.0, gt=0)
    stale_job_minutes: int = Field(default=30, gt=0)
    job_retention_hours: int = Field(default=24 * 7, gt=0)
    lease_ttl_seconds: int = Field(default=600, gt=0)


class Settings(BaseModel):
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    providers: List[ProviderSettings] = Field(default_factory=list)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    store_backend: Literal["memory", "supabase"] = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    redis_url: Optional[str] = None
    notification_webhook_url: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_references(self) -> "Settings":
        known = {p.id for p in self.providers}
        unknown = [d for d in self.orchestrator.drafters if d not in known]
        if unknown:
            raise ValueError(f"drafters reference unconfigured providers: {unknown}")
        if self.orchestrator.arbiter and self.orchestrator.arbiter not in known:
            raise ValueError(f"arbiter {self.orchestrator.arbiter} is not a configured provider")
        if self.store_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ValueError("supabase store requires SUPABASE_URL and SUPABASE_SERVICE_KEY")
        return self

    def drafting_providers(self) -> List[str]:
        return list(self.orchestrator.drafters) or [p.id for p in self.providers]

    def arbiter_provider(self) -> Optional[str]:
        if self.orchestrator.arbiter:
            return self.orchestrator.arbiter
        return self.providers[0].id if self.providers else None


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def settings_from_env(env: Mapping[str, str]) -> Settings:
    """Build Settings from an environment mapping."""
    timeout = float(env.get("PROVIDER_TIMEOUT_SECONDS", "45"))
    providers = []
    for provider_id, (kind, model, api_base) in PROVIDER_DEFAULTS.items():
        prefix = provider_id.upper()
        api_key = env.get(f"{prefix}_API_KEY")
        if not api_key:
            continue
        providers.append(ProviderSettings(
            id=provider_id,
            kind=kind,
            model=env.get(f"{prefix}_MODEL", model),
            api_key=api_key,
            api_base=env.get(f"{prefix}_API_BASE", api_base),
            timeout_seconds=timeout,
        ))

    orchestrator = OrchestratorSettings(
        drafters=_csv(env.get("CONSENSUS_DRAFTERS")),
        arbiter=env.get("CONSENSUS_ARBITER") or None,
        quorum=int(env.get("CONSENSUS_QUORUM", "2")),
        max_concurrent_calls=int(env.get("MAX_CONCURRENT_PROVIDER_CALLS", "8")),
    )
    ledger = LedgerSettings(
        overage_tolerance=float(env.get("OVERAGE_TOLERANCE", "0.5")),
        default_tier=env.get("DEFAULT_TIER", "starter"),
    )
    scheduler = SchedulerSettings(
        enabled=_flag(env.get("SCHEDULER_ENABLED"), True),
        alert_threshold=float(env.get("USAGE_ALERT_THRESHOLD", "0.75")),
        stale_job_minutes=int(env.get("STALE_JOB_MINUTES", "30")),
        job_retention_hours=int(env.get("JOB_RETENTION_HOURS", str(24 * 7))),
    )

    return Settings(
        environment=env.get("ENVIRONMENT", "development"),
        log_level=env.get("LOG_LEVEL", "INFO"),
        log_json=_flag(env.get("LOG_JSON"), False),
        cors_origins=_csv(env.get("CORS_ORIGINS")) or ["*"],
        providers=providers,
        orchestrator=orchestrator,
        ledger=ledger,
        scheduler=scheduler,
        store_backend=env.get("STORE_BACKEND", "memory"),
        supabase_url=env.get("SUPABASE_URL"),
        supabase_key=env.get("SUPABASE_SERVICE_KEY"),
        redis_url=env.get("REDIS_URL"),
        notification_webhook_url=env.get("NOTIFICATION_WEBHOOK_URL"),
    )


def load_settings() -> Settings:
    """Load `.env` (if present) and read settings from the process environment."""
    load_dotenv()
    return settings_from_env(os.environ)
