"""Wiring for the integration services.

Builds the repository, registry, orchestrator, and retry scheduler from
settings so the API lifespan and the operator CLI share one construction
path.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.assetsync.config import Settings
from src.assetsync.core.database import SessionFactory, get_session
from src.assetsync.integrations.clients import ClientDirectory
from src.assetsync.integrations.locks import ConnectionLocks
from src.assetsync.integrations.providers.http import HttpDefaults
from src.assetsync.integrations.reconciler import AssetReconciler
from src.assetsync.integrations.registry import ProviderRegistry, build_provider_registry
from src.assetsync.integrations.repository import IntegrationRepository
from src.assetsync.integrations.retry import RetryPolicy, RetryScheduler
from src.assetsync.integrations.sync import SyncOrchestrator


@dataclass
class IntegrationServices:
    """Process-wide integration service graph."""

    repository: IntegrationRepository
    registry: ProviderRegistry
    orchestrator: SyncOrchestrator
    retry_scheduler: RetryScheduler
    locks: ConnectionLocks


def http_defaults_from_settings(settings: Settings) -> HttpDefaults:
    return HttpDefaults(
        timeout_seconds=settings.PROVIDER_DEFAULT_TIMEOUT_SECONDS,
        page_size=settings.PROVIDER_DEFAULT_PAGE_SIZE,
        max_pages=settings.PROVIDER_MAX_PAGES,
    )


def build_integration_services(
    settings: Settings,
    session_factory: SessionFactory = get_session,
    registry: ProviderRegistry | None = None,
    client_directory: ClientDirectory | None = None,
) -> IntegrationServices:
    """Construct the integration services sharing one lock registry.

    Args:
        settings: Application settings.
        session_factory: Async session generator for the repository.
        registry: Provider registry; built-in adapters when omitted.
        client_directory: Internal client lookup for discovery auto-mapping.
    """
    repository = IntegrationRepository(session_factory)
    registry = registry or build_provider_registry(http_defaults_from_settings(settings))
    policy = RetryPolicy.from_settings(settings)
    locks = ConnectionLocks()
    orchestrator = SyncOrchestrator(
        repository,
        registry,
        reconciler=AssetReconciler(repository),
        locks=locks,
        retry_policy=policy,
        client_directory=client_directory,
    )
    retry_scheduler = RetryScheduler(repository, orchestrator, policy)
    return IntegrationServices(
        repository=repository,
        registry=registry,
        orchestrator=orchestrator,
        retry_scheduler=retry_scheduler,
        locks=locks,
    )
