"""Background and on-demand tasks for catalog sync, comparison and brackets."""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator.brackets.generator import (
    BracketGeneration,
    BracketPreview,
    PriceBracketGenerator,
    StoreSubmitter,
    SubmissionSummary,
)
from aggregator.compare.engine import ComparisonResult, PriceComparisonEngine
from aggregator.compare.selection import PackageSelectionService, SelectionResult
from aggregator.config import settings
from aggregator.db.models import UnifiedPackage
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import ConflictError, ValidationError
from aggregator.failover.selector import FailoverCandidate, FailoverSelector
from aggregator.ingest.base import CatalogClient
from aggregator.ingest.layouts import build_clients
from aggregator.normalize.country_codes import seed_country_code_mappings
from aggregator.pricing.engine import PricingEngine, RecomputeResult
from aggregator.registry.providers import ProviderRegistry, ProviderSnapshot
from aggregator.worker.run_lock import (
    COMPARISON_SCOPE,
    RunLockManager,
    brackets_scope,
    run_lock_manager,
    sync_scope,
)
from aggregator.worker.sync import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    ProviderSyncService,
    SyncResult,
)

logger = logging.getLogger(__name__)


def _result_without_run(
    provider: ProviderSnapshot,
    trigger: str,
    status: str,
    error: Optional[BaseException] = None,
) -> SyncResult:
    """Result for a provider whose sync never produced its own result."""
    result = SyncResult(
        provider_id=provider.id,
        provider_slug=provider.slug,
        run_id="",
        trigger=trigger,
        status=status,
    )
    if isinstance(error, ConflictError):
        result.error_code = error.error_type
        result.error_message = error.message
    elif error is not None:
        result.error_code = "internal"
        result.error_message = str(error)
    return result


class TaskRunner:
    """
    Entry point for everything the scheduler and admin API trigger.

    - Provider syncs run as independent asyncio tasks, one per provider
    - Comparison, storefront selection and bracket generation are single-flight per scope
    - Pricing changes are validated before anything is written
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        lock_manager: Optional[RunLockManager] = None,
        clients: Optional[Mapping[str, CatalogClient]] = None,
        store_submitters: Optional[Mapping[str, StoreSubmitter]] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager or run_lock_manager
        self.registry = ProviderRegistry(session_factory)
        self.pricing = PricingEngine(session_factory, self.registry)
        self.comparison = PriceComparisonEngine(session_factory)
        self.selection = PackageSelectionService(session_factory)
        self.failover = FailoverSelector(session_factory)
        self.brackets = PriceBracketGenerator(session_factory)
        self.store_submitters: dict[str, StoreSubmitter] = dict(store_submitters or {})
        self.sync_service: Optional[ProviderSyncService] = None
        if clients is not None:
            self.sync_service = ProviderSyncService(clients, session_factory, self.registry)
        self._http: Optional[httpx.AsyncClient] = None
        self._sync_tasks: dict[int, asyncio.Task] = {}

    async def initialize(self):
        """Create provider clients and seed reference data."""
        if self.sync_service is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.fetch_timeout_seconds),
                follow_redirects=True,
            )
            self.sync_service = ProviderSyncService(
                build_clients(self._http), self.session_factory, self.registry
            )

        async with self.session_factory() as db:
            async with db.begin():
                await seed_country_code_mappings(db)
        logger.info("Task runner initialized")

    async def close(self):
        """Cancel in-flight syncs and release resources."""
        await self.shutdown()
        if self._http:
            await self._http.aclose()
            self._http = None
        await self.lock_manager.close()

    async def shutdown(self):
        """Cancel running syncs; cancelled syncs do not advance last_sync_at."""
        tasks = [task for task in self._sync_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} in-flight syncs")

    # ------------------------------------------------------------------
    # Provider sync
    # ------------------------------------------------------------------

    def _require_sync_service(self) -> ProviderSyncService:
        if self.sync_service is None:
            raise RuntimeError("Task runner is not initialized")
        return self.sync_service

    def is_syncing(self, provider_id: int) -> bool:
        task = self._sync_tasks.get(provider_id)
        return task is not None and not task.done()

    async def ensure_sync_available(self, provider_id: int) -> None:
        """
        Check that nothing, here or in another process, is syncing the provider.

        Raises:
            ConflictError: If this process is syncing it or its sync lock is held
        """
        scope = sync_scope(provider_id)
        if self.is_syncing(provider_id):
            raise ConflictError(scope)
        info = await self.lock_manager.get_lock_info(scope)
        if info is not None:
            raise ConflictError(
                scope, f"Sync for provider {provider_id} is running elsewhere (run {info.get('run_id')})"
            )

    def start_sync(self, provider_id: int, trigger: str = "manual") -> asyncio.Task:
        """
        Start a provider sync in the background.

        Raises:
            ConflictError: If the provider is already syncing in this process
        """
        service = self._require_sync_service()
        if self.is_syncing(provider_id):
            raise ConflictError(sync_scope(provider_id))

        async def run() -> SyncResult:
            async with self.lock_manager.single_flight(sync_scope(provider_id)):
                return await service.sync_provider(provider_id, trigger)

        task = asyncio.create_task(run(), name=f"sync-provider-{provider_id}")
        self._sync_tasks[provider_id] = task
        task.add_done_callback(lambda t: self._on_sync_done(provider_id, t))
        return task

    def _on_sync_done(self, provider_id: int, task: asyncio.Task) -> None:
        if self._sync_tasks.get(provider_id) is task:
            del self._sync_tasks[provider_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, ConflictError):
            logger.error(f"Sync task for provider {provider_id} failed: {error!r}")

    async def sync_provider(self, provider_id: int, trigger: str = "manual") -> SyncResult:
        """Run a provider sync and wait for its result."""
        return await self.start_sync(provider_id, trigger)

    async def cancel_sync(self, provider_id: int) -> bool:
        """
        Cancel an in-flight sync.

        Returns:
            True if a sync was running and has been cancelled
        """
        task = self._sync_tasks.get(provider_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f"Cancelled sync for provider {provider_id}")
        return True

    async def sync_all(self, trigger: str = "manual") -> list[SyncResult]:
        """
        Sync every enabled provider concurrently, then refresh best prices and storefront selection.

        Each provider goes through start_sync, so it holds its own sync lock and
        can be cancelled like any other sync. A provider that is already syncing,
        here or in another process, is reported as skipped. One provider's
        failure never affects another.

        Returns:
            One result per enabled provider, in failover priority order
        """
        providers = await self.registry.list_enabled()
        if not providers:
            logger.info("No enabled providers to sync")
            return []

        results: dict[int, SyncResult] = {}
        tasks: dict[int, asyncio.Task] = {}
        for provider in providers:
            try:
                tasks[provider.id] = self.start_sync(provider.id, trigger)
            except ConflictError as e:
                results[provider.id] = _result_without_run(provider, trigger, STATUS_SKIPPED, e)

        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        by_id = {provider.id: provider for provider in providers}
        for provider_id, outcome in zip(tasks, outcomes):
            provider = by_id[provider_id]
            if isinstance(outcome, SyncResult):
                results[provider_id] = outcome
            elif isinstance(outcome, ConflictError):
                results[provider_id] = _result_without_run(provider, trigger, STATUS_SKIPPED, outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                results[provider_id] = _result_without_run(provider, trigger, STATUS_CANCELLED)
            else:
                results[provider_id] = _result_without_run(provider, trigger, STATUS_FAILED, outcome)

        ordered = [results[provider.id] for provider in providers]
        skipped = [r.provider_slug for r in ordered if r.error_code == ConflictError.error_type]
        if skipped:
            logger.info(f"Sync-all skipped providers already syncing: {', '.join(skipped)}")
        if any(r.success for r in ordered):
            await self.scheduled_comparison()
        return ordered

    async def run_due_syncs(self, now: Optional[datetime] = None) -> list[int]:
        """
        Start background syncs for enabled providers whose interval has elapsed.

        Returns:
            Ids of providers whose sync was started
        """
        started = []
        for provider in await self.registry.list_enabled():
            if self.is_syncing(provider.id) or not provider.is_due(now):
                continue
            self.start_sync(provider.id, trigger="scheduled")
            started.append(provider.id)
        if started:
            logger.info(f"Started scheduled sync for providers {started}")
        return started

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    async def run_comparison(
        self,
        destination_id: Optional[int] = None,
        region_id: Optional[int] = None,
    ) -> ComparisonResult:
        """
        Run a price comparison, full or scoped to one location.

        Raises:
            ConflictError: If a comparison is already running
        """
        async with self.lock_manager.single_flight(COMPARISON_SCOPE):
            if destination_id is not None:
                return await self.comparison.run_for_destination(destination_id)
            if region_id is not None:
                return await self.comparison.run_for_region(region_id)
            return await self.comparison.run_comparison()

    async def scheduled_comparison(self):
        """
        Full comparison followed by storefront selection.

        Runs from APScheduler and after sync-all; a run already in progress is
        not an error.
        """
        try:
            await self.refresh_storefront()
        except ConflictError:
            logger.info("Skipping comparison and selection: a run is already in progress")

    async def refresh_storefront(self) -> tuple[ComparisonResult, SelectionResult]:
        """
        Recompute best prices, then re-apply storefront selection.

        Raises:
            ConflictError: If a comparison is already running
        """
        async with self.lock_manager.single_flight(COMPARISON_SCOPE):
            comparison = await self.comparison.run_comparison()
            selection = await self.selection.run_selection()
        return comparison, selection

    async def run_selection(self) -> SelectionResult:
        """Re-apply storefront selection to the current best-price marks."""
        async with self.lock_manager.single_flight(COMPARISON_SCOPE):
            return await self.selection.run_selection()

    async def set_package_visibility(self, package_id: int, is_enabled: Optional[bool]) -> UnifiedPackage:
        """Pin a package visible or hidden; None hands it back to auto selection."""
        if is_enabled is None:
            return await self.selection.clear_manual_override(package_id)
        return await self.selection.set_manual_override(package_id, is_enabled)

    # ------------------------------------------------------------------
    # Pricing / failover
    # ------------------------------------------------------------------

    async def update_provider_margin(
        self,
        provider_id: int,
        margin_percent: Any,
        min_margin_percent: Any = None,
    ) -> tuple[ProviderSnapshot, RecomputeResult]:
        return await self.pricing.update_provider_margin(provider_id, margin_percent, min_margin_percent)

    async def set_package_override(self, package_id: int, price: Optional[Decimal]) -> UnifiedPackage:
        return await self.pricing.set_price_override(package_id, price)

    async def provider_order_for_package(self, package_id: int) -> list[FailoverCandidate]:
        return await self.failover.select_for_package(package_id)

    # ------------------------------------------------------------------
    # Price brackets
    # ------------------------------------------------------------------

    async def preview_brackets(self, currency: str, step_size: Any) -> BracketPreview:
        return await self.brackets.preview(currency, step_size)

    async def generate_brackets(self, currency: str, step_size: Any) -> BracketGeneration:
        """
        Generate brackets for a currency.

        Raises:
            ConflictError: If generation or submission is running for the currency
        """
        async with self.lock_manager.single_flight(brackets_scope(currency)):
            return await self.brackets.generate(currency, step_size)

    async def submit_brackets(self, currency: str) -> SubmissionSummary:
        """Submit pending brackets to the configured stores."""
        if not self.store_submitters:
            raise ValidationError("No store submitters are configured")
        async with self.lock_manager.single_flight(brackets_scope(currency)):
            return await self.brackets.submit_pending(currency, self.store_submitters)


# Global task runner instance
task_runner = TaskRunner()
