"""Prometheus collectors for the sync worker.

Collectors are module-level so every component (and every test) shares a single
registration in the default registry.
"""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from src.utils.logging import configure_logging

log = configure_logging("metrics")

CHANGES_PROCESSED = Counter(
    "sync_changes_processed_total",
    "External changes committed, by outcome",
    ["outcome"],
)
BATCH_DURATION = Histogram(
    "sync_batch_duration_seconds",
    "Time taken to process one batch of external changes",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)
CACHE_INVALIDATIONS = Counter(
    "sync_cache_invalidations_total",
    "Cache invalidations issued, by cache name and kind (evict/clear)",
    ["cache", "kind"],
)
BRIDGE_REFRESHES = Counter(
    "sync_bridge_refreshes_total",
    "Bridge refreshes, by result (live/payload/removed/failed/rejected)",
    ["result"],
)
BRIDGE_CONNECTED = Gauge(
    "sync_bridge_connection_state",
    "Bridge connection state: 2 connected, 1 degraded, 0 disconnected",
)
WEBHOOK_DELIVERIES = Counter(
    "sync_webhook_deliveries_total",
    "Webhook deliveries by final result (delivered/failed)",
    ["result"],
)
WEBHOOK_ATTEMPTS = Counter(
    "sync_webhook_attempts_total",
    "Individual webhook HTTP attempts, including retries",
)
SCHEDULER_CYCLES = Counter(
    "sync_scheduler_cycles_total",
    "Scheduler ticks by tick type and result (success/failure/skipped)",
    ["tick", "result"],
)
UNPROCESSED_CHANGES = Gauge("sync_unprocessed_changes", "Unprocessed external changes at last health check")
PROCESSING_LAG = Gauge("sync_processing_lag_seconds", "Age of the oldest unprocessed change at last health check")
BOTTLENECKED_CHANGES = Gauge("sync_bottlenecked_changes", "Unprocessed changes older than the lag threshold")
CLEANUP_DELETED = Counter("sync_cleanup_deleted_total", "Processed changes deleted by retention cleanup")

_server_started = False


def maybe_start_metrics_server(port) -> None:
    global _server_started
    if _server_started or not port:
        return
    start_http_server(int(port), addr="0.0.0.0")
    _server_started = True
    log.info("Prometheus metrics server started", extra={"port": port})
