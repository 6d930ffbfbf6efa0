import signal
import threading

from src.adapters.bridge.client import BridgeClient
from src.adapters.cache.redis_cache import RedisCacheInvalidator
from src.adapters.changelog.store import ChangeLogStore
from src.adapters.postgres.db import PostgresPool
from src.config.settings import Settings, require_runtime_settings
from src.pipelines.bridge_cache import BridgeCache
from src.pipelines.effect_coordinator import EffectCoordinator
from src.pipelines.scanner import ChangeScanner
from src.pipelines.webhook_dispatcher import WebhookDispatcher
from src.utils.logging import configure_logging
from src.utils.metrics import maybe_start_metrics_server
from src.workers.controls import SyncControls
from src.workers.scheduler import Scheduler


def build_controls(settings: Settings, pg_pool: PostgresPool) -> SyncControls:
    store = ChangeLogStore(pg_pool)
    cache = RedisCacheInvalidator.from_url(settings.redis_url)
    bridge_client = BridgeClient(settings) if settings.bridge_enabled else None
    bridge = BridgeCache(settings, bridge_client)
    webhooks = WebhookDispatcher(settings)
    scanner = ChangeScanner(settings, store)
    coordinator = EffectCoordinator(settings, store, cache, bridge, webhooks)
    scheduler = Scheduler(settings, scanner, coordinator, store, bridge, webhooks)
    return SyncControls(scheduler, coordinator, scanner, store, webhooks, bridge)


def main():
    settings = Settings()
    require_runtime_settings(settings)
    log = configure_logging("subscription_sync_worker", settings.log_level)
    log.info("Starting subscription change sync worker", extra={"pipeline": settings.pipeline_name})
    maybe_start_metrics_server(settings.metrics_port)

    pg_pool = PostgresPool(settings.database_dsn)
    controls = build_controls(settings, pg_pool)
    bridge = controls.bridge

    if bridge.enabled:
        state = bridge.check_connection()
        log.info("Bridge connection checked", extra={"state": state.value})
        bridge.resync_all()
    if not controls.coordinator.cache.ping():
        log.warning("Redis did not answer ping; invalidations will be retried per change")

    stopping = threading.Event()

    def _handle_signal(signum, _frame):
        log.info("Shutdown signal received", extra={"signal": signum})
        stopping.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        controls.scheduler.start()
        stopping.wait()
    finally:
        controls.scheduler.stop(wait_for_webhooks=True)
        if bridge.client is not None:
            bridge.client.close()
        pg_pool.close()
        log.info("Worker stopped")


if __name__ == "__main__":
    main()
