"""Prometheus metrics for the eSIM catalog aggregator."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("esim_aggregator", "eSIM catalog aggregator application info")
app_info.info({"version": "0.1.0", "name": "esim-aggregator"})

# Catalog fetch metrics
catalog_pages_fetched_total = Counter(
    "catalog_pages_fetched_total",
    "Total number of catalog pages fetched from providers",
    ["provider", "status"],
)

catalog_fetch_retries_total = Counter(
    "catalog_fetch_retries_total",
    "Total number of retried catalog page fetches",
    ["provider", "reason"],
)

# Sync metrics
provider_sync_runs_total = Counter(
    "provider_sync_runs_total",
    "Total number of provider sync runs",
    ["provider", "status"],
)

provider_sync_duration_seconds = Histogram(
    "provider_sync_duration_seconds",
    "Time spent syncing a provider catalog",
    ["provider"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

packages_upserted_total = Counter(
    "packages_upserted_total",
    "Total number of unified package writes",
    ["provider", "action"],
)

normalization_errors_total = Counter(
    "normalization_errors_total",
    "Total number of raw offers skipped during normalization",
    ["provider"],
)

# Comparison metrics
comparison_runs_total = Counter(
    "comparison_runs_total",
    "Total number of price comparison runs",
    ["status"],
)

best_price_groups = Gauge(
    "best_price_groups",
    "Number of equivalence groups with a best price mark",
)

# Bracket metrics
price_brackets_active = Gauge(
    "price_brackets_active",
    "Number of active price brackets",
    ["currency"],
)

# Locking
run_lock_rejections_total = Counter(
    "run_lock_rejections_total",
    "Total number of runs rejected because the scope was locked",
    ["scope"],
)


def record_page_fetch(provider: str, success: bool):
    """Record a catalog page fetch attempt."""
    status = "success" if success else "error"
    catalog_pages_fetched_total.labels(provider=provider, status=status).inc()


def record_fetch_retry(provider: str, reason: str):
    """Record a retried page fetch."""
    catalog_fetch_retries_total.labels(provider=provider, reason=reason).inc()


def record_sync_run(provider: str, status: str, duration: float):
    """Record a finished provider sync."""
    provider_sync_runs_total.labels(provider=provider, status=status).inc()
    provider_sync_duration_seconds.labels(provider=provider).observe(duration)


def record_package_writes(provider: str, created: int, updated: int, deactivated: int):
    """Record package upserts and deactivations for one sync."""
    if created:
        packages_upserted_total.labels(provider=provider, action="created").inc(created)
    if updated:
        packages_upserted_total.labels(provider=provider, action="updated").inc(updated)
    if deactivated:
        packages_upserted_total.labels(provider=provider, action="deactivated").inc(deactivated)


def record_normalization_errors(provider: str, count: int):
    """Record skipped offers."""
    if count:
        normalization_errors_total.labels(provider=provider).inc(count)


def record_comparison_run(success: bool, groups: int | None = None):
    """Record a comparison run and, for full runs, the resulting group count."""
    status = "success" if success else "error"
    comparison_runs_total.labels(status=status).inc()
    if groups is not None:
        best_price_groups.set(groups)


def update_active_brackets(currency: str, count: int):
    """Update the active bracket gauge for a currency."""
    price_brackets_active.labels(currency=currency).set(count)


def record_lock_rejection(scope: str):
    """Record a single-flight rejection."""
    run_lock_rejections_total.labels(scope=scope.split(":")[0]).inc()
