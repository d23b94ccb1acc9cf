"""Provider catalog sync: fetch, normalize, price and persist."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from aggregator import metrics
from aggregator.db.models import SyncRun
from aggregator.db.repository import CatalogRepository
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import ProviderError
from aggregator.ingest.base import CatalogClient
from aggregator.ingest.fetcher import CatalogFetcher
from aggregator.ingest.provider_health import (
    ERROR_API_FAILURE,
    ERROR_AUTH_FAILURE,
    ERROR_RATE_LIMIT,
    ERROR_SYNC_FAILURE,
    ProviderErrorTracker,
    provider_error_tracker,
)
from aggregator.ingest.rate_limiter import RateLimiter, rate_limiter
from aggregator.logging_config import get_logger
from aggregator.normalize.locations import LocationResolver
from aggregator.normalize.processor import PackageNormalizer, UnifiedPackageData
from aggregator.pricing.engine import compute_sell_price
from aggregator.registry.providers import ProviderRegistry, ProviderSnapshot

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
STATUS_SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Outcome of one provider sync.

    Counts reflect everything processed up to the point the sync stopped,
    so a failed sync still reports how far it got. ``started`` is False
    when the sync never began (provider disabled or no client).
    """

    provider_id: int
    provider_slug: str
    run_id: str
    trigger: str = "manual"
    status: str = "running"
    started: bool = False
    pages_fetched: int = 0
    offers_seen: int = 0
    packages_processed: int = 0
    normalization_errors: int = 0
    packages_created: int = 0
    packages_updated: int = 0
    packages_deactivated: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def error_type_for(error: ProviderError) -> str:
    code = error.upstream_code or ""
    if error.is_auth_failure:
        return ERROR_AUTH_FAILURE
    if code.endswith("429"):
        return ERROR_RATE_LIMIT
    if code.startswith("transient_exhausted"):
        return ERROR_API_FAILURE
    return ERROR_SYNC_FAILURE


class ProviderSyncService:
    """Runs catalog syncs, one independent unit of work per provider."""

    def __init__(
        self,
        clients: Mapping[str, CatalogClient],
        session_factory: async_sessionmaker = AsyncSessionLocal,
        registry: Optional[ProviderRegistry] = None,
        limiter: Optional[RateLimiter] = None,
        error_tracker: Optional[ProviderErrorTracker] = None,
        fetcher_factory: Optional[Callable[[CatalogClient], CatalogFetcher]] = None,
    ):
        self.clients = dict(clients)
        self.session_factory = session_factory
        self.registry = registry or ProviderRegistry(session_factory)
        self.limiter = limiter or rate_limiter
        self.error_tracker = error_tracker or provider_error_tracker
        self.fetcher_factory = fetcher_factory or (
            lambda client: CatalogFetcher(client, limiter=self.limiter)
        )

    async def sync_provider(self, provider_id: int, trigger: str = "manual") -> SyncResult:
        """
        Sync one provider's catalog.

        The provider config is snapshotted at the start. Packages are only
        written once the whole catalog has been fetched, so a failed or
        cancelled sync leaves stored packages and last_sync_at untouched.

        Args:
            provider_id: Provider to sync
            trigger: 'scheduled' or 'manual'

        Returns:
            SyncResult; provider failures are reported here, not raised

        Raises:
            NotFoundError: If the provider does not exist
            asyncio.CancelledError: If the sync is cancelled
        """
        snapshot = await self.registry.get(provider_id)
        run_id = uuid4().hex
        log = get_logger(__name__, provider=snapshot.slug, run_id=run_id)
        result = SyncResult(
            provider_id=snapshot.id,
            provider_slug=snapshot.slug,
            run_id=run_id,
            trigger=trigger,
        )

        if not snapshot.enabled:
            result.status = STATUS_SKIPPED
            result.error_message = "Provider is disabled"
            return result
        client = self.clients.get(snapshot.slug)
        if client is None:
            result.status = STATUS_SKIPPED
            result.error_message = f"No catalog client for '{snapshot.slug}'"
            log.warning(result.error_message)
            return result

        start = time.monotonic()
        sync_run_id = await self._start_run(snapshot, run_id, trigger)
        result.started = True
        log.info(f"Starting {trigger} sync for {snapshot.slug}")

        try:
            packages = await self._fetch_and_normalize(snapshot, client, result)
            await self._persist(snapshot, packages, result)
            await self.registry.mark_synced(snapshot.id)
            result.status = STATUS_COMPLETED
            self.error_tracker.mark_success(snapshot.slug)
            log.info(
                f"Sync complete: {result.pages_fetched} pages, {result.packages_created} created, "
                f"{result.packages_updated} updated, {result.packages_deactivated} deactivated, "
                f"{result.normalization_errors} skipped"
            )
        except ProviderError as e:
            result.status = STATUS_FAILED
            result.error_code = e.upstream_code
            result.error_message = e.message
            self.error_tracker.record_error(snapshot.slug, error_type_for(e), e.message)
            log.error(
                f"Sync aborted after {result.pages_fetched} pages "
                f"({result.packages_processed} packages processed): {e.message}"
            )
        except asyncio.CancelledError:
            result.status = STATUS_CANCELLED
            result.error_message = "Sync cancelled"
            log.warning(f"Sync cancelled after {result.pages_fetched} pages")
            raise
        except Exception as e:
            result.status = STATUS_FAILED
            result.error_code = "internal"
            result.error_message = str(e)
            raise
        finally:
            result.duration_seconds = time.monotonic() - start
            metrics.record_sync_run(snapshot.slug, result.status, result.duration_seconds)
            metrics.record_normalization_errors(snapshot.slug, result.normalization_errors)
            await asyncio.shield(self._finish_run(sync_run_id, result))

        return result

    async def sync_all(self, trigger: str = "manual") -> list[SyncResult]:
        """Sync every enabled provider concurrently; one failure never affects another."""
        providers = await self.registry.list_enabled()
        if not providers:
            logger.info("No enabled providers to sync")
            return []
        return list(
            await asyncio.gather(*(self._sync_isolated(p, trigger) for p in providers))
        )

    async def _sync_isolated(self, provider: ProviderSnapshot, trigger: str) -> SyncResult:
        try:
            return await self.sync_provider(provider.id, trigger)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {provider.slug}")
            return SyncResult(
                provider_id=provider.id,
                provider_slug=provider.slug,
                run_id="",
                trigger=trigger,
                status=STATUS_FAILED,
                error_code="internal",
                error_message=str(e),
            )

    async def _fetch_and_normalize(
        self,
        snapshot: ProviderSnapshot,
        client: CatalogClient,
        result: SyncResult,
    ) -> dict[str, UnifiedPackageData]:
        async with self.session_factory() as db:
            resolver = await LocationResolver.load(db)
        normalizer = PackageNormalizer(resolver)
        fetcher = self.fetcher_factory(client)

        packages: dict[str, UnifiedPackageData] = {}
        async for page in fetcher.iter_pages(snapshot):
            result.pages_fetched += 1
            result.offers_seen += len(page.offers)
            batch = normalizer.normalize_batch(snapshot.slug, page.offers)
            result.normalization_errors += len(batch.errors)
            result.packages_processed += len(batch.packages)
            for package in batch.packages:
                packages[package.provider_package_id] = package
        return packages

    async def _persist(
        self,
        snapshot: ProviderSnapshot,
        packages: dict[str, UnifiedPackageData],
        result: SyncResult,
    ) -> None:
        async with self.session_factory() as db:
            repo = CatalogRepository(db)
            for package in packages.values():
                sell_price = compute_sell_price(
                    package.wholesale_cost, snapshot.pricing_margin_percent, package.currency
                )
                # One transaction per package
                async with db.begin():
                    _, created = await repo.upsert_package(snapshot.id, package, sell_price)
                if created:
                    result.packages_created += 1
                else:
                    result.packages_updated += 1

            async with db.begin():
                result.packages_deactivated = await repo.deactivate_missing_packages(
                    snapshot.id, packages.keys()
                )

        metrics.record_package_writes(
            snapshot.slug,
            result.packages_created,
            result.packages_updated,
            result.packages_deactivated,
        )

    async def _start_run(self, snapshot: ProviderSnapshot, run_id: str, trigger: str) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                run = SyncRun(run_id=run_id, provider_id=snapshot.id, trigger=trigger, status="running")
                db.add(run)
                await db.flush()
                return run.id

    async def _finish_run(self, sync_run_id: int, result: SyncResult) -> None:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    run = await db.get(SyncRun, sync_run_id)
                    if run is None:
                        return
                    run.status = result.status
                    run.completed_at = datetime.utcnow()
                    run.pages_fetched = result.pages_fetched
                    run.offers_seen = result.offers_seen
                    run.packages_processed = result.packages_processed
                    run.normalization_errors = result.normalization_errors
                    run.packages_created = result.packages_created
                    run.packages_updated = result.packages_updated
                    run.packages_deactivated = result.packages_deactivated
                    run.error_code = result.error_code
                    run.error_message = result.error_message
        except Exception as e:
            logger.error(f"Failed to record sync run {result.run_id}: {e}")
