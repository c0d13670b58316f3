"""Prometheus metrics for the catalog monitor."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("catalog_monitor", "Catalog monitor application info")
app_info.info({"version": "0.1.0", "name": "catalog-monitor"})

# Fetch metrics
catalog_fetches_total = Counter(
    "catalog_fetches_total",
    "Total number of catalog fetch attempts",
    ["provider", "status"],
)

catalog_fetch_errors_total = Counter(
    "catalog_fetch_errors_total",
    "Total number of failed catalog fetches",
    ["provider", "error_type"],
)

catalog_fetch_duration_seconds = Histogram(
    "catalog_fetch_duration_seconds",
    "Time spent fetching provider catalogs",
    ["provider"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Scan metrics
scans_total = Counter(
    "catalog_scans_total",
    "Total number of catalog scans by outcome",
    ["provider", "outcome"],
)

scan_claims_skipped_total = Counter(
    "catalog_scan_claims_skipped_total",
    "Scan claims lost to another worker",
)

scan_states_recovered_total = Counter(
    "catalog_scan_states_recovered_total",
    "Scan states reset from a stale scanning status",
)

scan_states_disabled_total = Counter(
    "catalog_scan_states_disabled_total",
    "Scan states disabled automatically",
    ["reason"],
)

# Detection metrics
releases_detected_total = Counter(
    "releases_detected_total",
    "Total number of newly detected releases",
    ["provider", "confidence"],
)

malformed_items_total = Counter(
    "catalog_malformed_items_total",
    "Provider catalog items skipped because they could not be parsed",
    ["provider"],
)

# Alert metrics
alerts_enqueued_total = Counter(
    "alerts_enqueued_total",
    "Total number of alerts enqueued",
    ["alert_type"],
)

alerts_deduplicated_total = Counter(
    "alerts_deduplicated_total",
    "Alert enqueue attempts absorbed by the dedup key",
    ["alert_type"],
)

alerts_processed_total = Counter(
    "alerts_processed_total",
    "Total number of alerts processed by the alert cycle",
    ["channel", "status"],
)

alerts_recovered_total = Counter(
    "alerts_recovered_total",
    "Alerts reset from a stale sending status",
)

# Action metrics
release_actions_total = Counter(
    "release_actions_total",
    "Creator actions applied to detected releases",
    ["action", "outcome"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_fetch_success(provider: str, duration: float):
    """Record a successful catalog fetch."""
    catalog_fetches_total.labels(provider=provider, status="success").inc()
    catalog_fetch_duration_seconds.labels(provider=provider).observe(duration)


def record_fetch_error(provider: str, error_type: str, duration: float):
    """Record a failed catalog fetch."""
    catalog_fetches_total.labels(provider=provider, status="error").inc()
    catalog_fetch_errors_total.labels(provider=provider, error_type=error_type).inc()
    catalog_fetch_duration_seconds.labels(provider=provider).observe(duration)


def record_scan_outcome(provider: str, outcome: str):
    scans_total.labels(provider=provider, outcome=outcome).inc()


def record_scan_state_disabled(reason: str):
    scan_states_disabled_total.labels(reason=reason).inc()


def record_release_detected(provider: str, confidence: str):
    releases_detected_total.labels(provider=provider, confidence=confidence).inc()


def record_alert_enqueued(alert_type: str, created: bool):
    """Record an enqueue attempt, split by whether the dedup key absorbed it."""
    if created:
        alerts_enqueued_total.labels(alert_type=alert_type).inc()
    else:
        alerts_deduplicated_total.labels(alert_type=alert_type).inc()


def record_alert_processed(channel: str, status: str):
    alerts_processed_total.labels(channel=channel, status=status).inc()


def record_release_action(action: str, outcome: str):
    release_actions_total.labels(action=action, outcome=outcome).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
