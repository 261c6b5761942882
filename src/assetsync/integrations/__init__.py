"""Vendor inventory integrations.

Pulls asset inventory from MSP tools (ConnectWise, IT Glue, Kaseya, Auvik,
or a custom HTTP feed), reconciles it into the canonical asset store, and
tracks every unit of work as a sync run with retry bookkeeping.

Exports:
    SyncOrchestrator: Pull syncs, push runs, due checks, client discovery.
    RetryScheduler: Sweeps failed runs and abandoned running runs.
    RetryPolicy: Exponential backoff and retry budget.
    AssetReconciler: Idempotent upsert of normalized items.
    IntegrationRepository: Async persistence for the integration tables.
    ProviderRegistry: Provider key -> adapter lookup.
"""

from __future__ import annotations

__all__ = [
    "AssetReconciler",
    "IntegrationRepository",
    "ProviderRegistry",
    "RetryPolicy",
    "RetryScheduler",
    "SyncOrchestrator",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load services so importing models does not pull in every adapter."""
    if name == "SyncOrchestrator":
        from src.assetsync.integrations.sync import SyncOrchestrator

        return SyncOrchestrator
    if name in ("RetryScheduler", "RetryPolicy"):
        from src.assetsync.integrations import retry

        return getattr(retry, name)
    if name == "AssetReconciler":
        from src.assetsync.integrations.reconciler import AssetReconciler

        return AssetReconciler
    if name == "IntegrationRepository":
        from src.assetsync.integrations.repository import IntegrationRepository

        return IntegrationRepository
    if name == "ProviderRegistry":
        from src.assetsync.integrations.registry import ProviderRegistry

        return ProviderRegistry
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
