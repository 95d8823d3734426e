"""Prometheus metrics for pricesync."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricesync", "pricesync application info")
app_info.info({"version": "0.1.0", "name": "pricesync"})

# Fetch metrics
price_fetches_total = Counter(
    "pricesync_price_fetches_total",
    "Total number of price fetch attempts",
    ["marketplace", "status"],
)

price_fetch_errors_total = Counter(
    "pricesync_price_fetch_errors_total",
    "Total number of failed price fetches",
    ["marketplace", "error_type"],
)

price_fetch_duration_seconds = Histogram(
    "pricesync_price_fetch_duration_seconds",
    "Time spent fetching prices",
    ["marketplace"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Matching metrics
match_decisions_total = Counter(
    "pricesync_match_decisions_total",
    "Product match decisions by verdict",
    ["verdict"],
)

matching_fallbacks_total = Counter(
    "pricesync_matching_fallbacks_total",
    "Comparator failures degraded to manual review",
)

# Alert metrics
alerts_sent_total = Counter(
    "pricesync_alerts_sent_total",
    "Total number of price alerts delivered",
    ["status"],
)

# Price change metrics
price_changes_total = Counter(
    "pricesync_price_changes_total",
    "Total number of authoritative price changes",
    ["direction"],
)

# Reconciliation run metrics
reconciliation_runs_total = Counter(
    "pricesync_reconciliation_runs_total",
    "Total number of reconciliation runs",
    ["trigger", "status"],
)

reconciliation_last_run_timestamp = Gauge(
    "pricesync_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

reconciliation_items_total = Counter(
    "pricesync_reconciliation_items_total",
    "Items processed by reconciliation runs",
    ["outcome"],
)

run_lock_skipped_total = Counter(
    "pricesync_run_lock_skipped_total",
    "Reconciliation runs skipped because another run holds the lock",
    ["trigger"],
)


def record_fetch_success(marketplace: str, duration: float):
    """Record a successful price fetch."""
    price_fetches_total.labels(marketplace=marketplace, status="success").inc()
    price_fetch_duration_seconds.labels(marketplace=marketplace).observe(duration)


def record_fetch_error(marketplace: str, error_type: str, duration: float):
    """Record a failed price fetch."""
    price_fetches_total.labels(marketplace=marketplace, status="error").inc()
    price_fetch_errors_total.labels(marketplace=marketplace, error_type=error_type).inc()
    price_fetch_duration_seconds.labels(marketplace=marketplace).observe(duration)


def record_price_change(old_price, new_price):
    """Record an authoritative price change."""
    if old_price is None or old_price == new_price:
        return
    direction = "up" if new_price > old_price else "down"
    price_changes_total.labels(direction=direction).inc()


def record_match_decision(verdict: str):
    match_decisions_total.labels(verdict=verdict).inc()


def record_alert_sent(success: bool):
    """Record an alert delivery attempt."""
    status = "success" if success else "error"
    alerts_sent_total.labels(status=status).inc()


def record_reconciliation_run(trigger: str, status: str):
    """Record a finished reconciliation run."""
    reconciliation_runs_total.labels(trigger=trigger, status=status).inc()
    reconciliation_last_run_timestamp.set(time.time())


def record_item_outcome(outcome: str):
    reconciliation_items_total.labels(outcome=outcome).inc()


def record_run_lock_skipped(trigger: str):
    run_lock_skipped_total.labels(trigger=trigger).inc()


def record_matching_fallback():
    """Record a comparator failure that degraded to manual review."""
    matching_fallbacks_total.inc()
