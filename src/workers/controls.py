from dataclasses import asdict
from typing import Any, Dict, List, Optional

from src.adapters.changelog.store import ChangeLogStore
from src.domain.models.bridge import RefreshOutcome
from src.domain.models.changes import BatchResult, ChangeRecord, SyncStatus
from src.domain.models.webhooks import WebhookTestResult
from src.pipelines.bridge_cache import BridgeCache
from src.pipelines.effect_coordinator import EffectCoordinator
from src.pipelines.scanner import ChangeScanner
from src.pipelines.webhook_dispatcher import WebhookDispatcher
from src.workers.scheduler import Scheduler


class SyncControls:
    """Operator-facing calls over a running worker.

    Nothing here writes record status except ``reprocess``, which only moves a
    FAILED change back to PENDING for the coordinator to pick up.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        coordinator: EffectCoordinator,
        scanner: ChangeScanner,
        store: ChangeLogStore,
        webhooks: WebhookDispatcher,
        bridge: BridgeCache,
    ):
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.scanner = scanner
        self.store = store
        self.webhooks = webhooks
        self.bridge = bridge

    def trigger_batch(self, batch_size: Optional[int] = None) -> BatchResult:
        return self.scheduler.trigger_batch(batch_size)

    def set_scheduler_enabled(self, enabled: bool) -> None:
        self.scheduler.set_enabled(enabled)

    def invalidate_cache(self, cache_name: str, key: Optional[str] = None) -> int:
        return self.coordinator.invalidate_cache(cache_name, key)

    def test_webhook(self, endpoint: str) -> WebhookTestResult:
        return self.webhooks.test_delivery(endpoint)

    def list_changes(
        self, status: Optional[SyncStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[ChangeRecord]:
        return self.store.list_changes(status=status, limit=limit, offset=offset)

    def get_change(self, change_id: int) -> Optional[ChangeRecord]:
        return self.store.get_change(change_id)

    def reprocess(self, change_id: int) -> bool:
        return self.coordinator.reprocess(change_id)

    def resync_bridge(self) -> RefreshOutcome:
        if self.bridge.enabled:
            self.bridge.check_connection()
        return self.bridge.resync_all()

    def status_snapshot(self) -> Dict[str, Any]:
        health = self.scheduler.state.last_health or self.scheduler.health()
        return {
            "scheduler": self.scheduler.status(),
            "health": asdict(health),
            "statistics": asdict(self.scanner.statistics()),
            "webhooks": self.webhooks.statistics(),
            "bridge": asdict(self.bridge.status()),
        }
