import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from src.adapters.changelog.store import ChangeLogStore
from src.config.settings import Settings
from src.domain.models.changes import BatchResult, HealthSnapshot, HealthStatus
from src.pipelines.bridge_cache import BridgeCache
from src.pipelines.effect_coordinator import EffectCoordinator
from src.pipelines.scanner import ChangeScanner
from src.pipelines.webhook_dispatcher import WebhookDispatcher
from src.utils import metrics
from src.utils.clock import utc_now
from src.utils.logging import configure_logging


class SchedulerState:
    """Mutable scheduler bookkeeping shared between ticker threads and controls."""

    def __init__(self, enabled: bool):
        self._lock = threading.Lock()
        self._enabled = enabled
        self._running_since: Optional[datetime] = None
        self._last_tick_started_at: Optional[datetime] = None
        self._last_tick_finished_at: Optional[datetime] = None
        self._last_success_at: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_result: Optional[BatchResult] = None
        self._last_health: Optional[HealthSnapshot] = None
        self._cycles = 0
        self._failures = 0
        self._skipped = 0

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        with self._lock:
            self._enabled = value

    @property
    def running_since(self) -> Optional[datetime]:
        with self._lock:
            return self._running_since

    @property
    def last_success_at(self) -> Optional[datetime]:
        with self._lock:
            return self._last_success_at

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def last_result(self) -> Optional[BatchResult]:
        with self._lock:
            return self._last_result

    @property
    def last_health(self) -> Optional[HealthSnapshot]:
        with self._lock:
            return self._last_health

    @last_health.setter
    def last_health(self, snapshot: HealthSnapshot) -> None:
        with self._lock:
            self._last_health = snapshot

    def tick_started(self, at: datetime) -> None:
        with self._lock:
            self._running_since = at
            self._last_tick_started_at = at

    def tick_succeeded(self, result: BatchResult) -> None:
        with self._lock:
            finished = result.finished_at or utc_now()
            self._running_since = None
            self._last_tick_finished_at = finished
            self._last_success_at = finished
            self._last_result = result
            self._cycles += 1

    def tick_failed(self, at: datetime, error: str) -> None:
        with self._lock:
            self._running_since = None
            self._last_tick_finished_at = at
            self._last_failure_at = at
            self._last_error = error
            self._cycles += 1
            self._failures += 1

    def tick_skipped(self) -> None:
        with self._lock:
            self._skipped += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._enabled,
                "running": self._running_since is not None,
                "running_since": self._running_since,
                "last_tick_started_at": self._last_tick_started_at,
                "last_tick_finished_at": self._last_tick_finished_at,
                "last_success_at": self._last_success_at,
                "last_failure_at": self._last_failure_at,
                "last_error": self._last_error,
                "last_message": self._last_result.message if self._last_result else None,
                "cycles": self._cycles,
                "failures": self._failures,
                "skipped": self._skipped,
            }


class Scheduler:
    """Drives the main, health and cleanup ticks on daemon threads.

    Each tick type has its own lock and a tick that finds its lock held is
    skipped, so ticks never overlap. Manual triggers share the main-tick lock
    but wait up to ``manual_trigger_wait_seconds`` for it.
    """

    def __init__(
        self,
        settings: Settings,
        scanner: ChangeScanner,
        coordinator: EffectCoordinator,
        store: ChangeLogStore,
        bridge: BridgeCache,
        webhooks: WebhookDispatcher,
    ):
        self.settings = settings
        self.scanner = scanner
        self.coordinator = coordinator
        self.store = store
        self.bridge = bridge
        self.webhooks = webhooks
        self.state = SchedulerState(enabled=settings.sync_enabled)
        self.log = configure_logging("scheduler", settings.log_level)

        self._main_lock = threading.Lock()
        self._health_lock = threading.Lock()
        self._cleanup_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # -- ticks -------------------------------------------------------------

    def run_main_tick(self) -> BatchResult:
        if not self.state.enabled:
            metrics.SCHEDULER_CYCLES.labels(tick="main", result="skipped").inc()
            return BatchResult.skipped("Sync disabled")
        if not self._main_lock.acquire(blocking=False):
            self._note_overlap()
            return BatchResult.skipped("Sync already in progress")
        try:
            return self._execute_batch(self.settings.batch_size, trigger="scheduled")
        finally:
            self._main_lock.release()

    def trigger_batch(self, batch_size: Optional[int] = None) -> BatchResult:
        """Run one batch now, outside the schedule. Works while the schedule is disabled."""
        size = self.settings.batch_size if batch_size is None else batch_size
        if size < 1:
            return BatchResult.skipped("Batch size must be positive")
        if not self._main_lock.acquire(timeout=self.settings.manual_trigger_wait_seconds):
            self._note_overlap()
            return BatchResult.skipped("Sync already in progress")
        try:
            return self._execute_batch(size, trigger="manual")
        finally:
            self._main_lock.release()

    def _execute_batch(self, size: int, trigger: str) -> BatchResult:
        self.state.tick_started(utc_now())
        try:
            self.bridge.maybe_reconnect()
            records = self.scanner.fetch_batch(size)
            result = self.coordinator.process_batch(records)
        except Exception as exc:  # noqa: BLE001
            now = utc_now()
            self.log.exception("Sync tick failed", extra={"trigger": trigger})
            self.state.tick_failed(now, str(exc))
            metrics.SCHEDULER_CYCLES.labels(tick="main", result="failure").inc()
            return BatchResult(success=False, message=f"Sync failed: {exc}", finished_at=now)

        self.state.tick_succeeded(result)
        metrics.SCHEDULER_CYCLES.labels(tick="main", result="success").inc()
        if result.fetched:
            self.log.info("Sync tick completed", extra={"trigger": trigger, "summary": result.message})
        return result

    def _note_overlap(self) -> None:
        self.state.tick_skipped()
        metrics.SCHEDULER_CYCLES.labels(tick="main", result="skipped").inc()
        if self.is_stuck():
            self.log.error(
                "Sync tick exceeded max processing time",
                extra={"running_since": self.state.running_since, "limit": self.settings.max_processing_time_seconds},
            )
        else:
            self.log.warning("Previous sync tick still running; skipping")

    def run_health_tick(self) -> Optional[HealthSnapshot]:
        if not self._health_lock.acquire(blocking=False):
            metrics.SCHEDULER_CYCLES.labels(tick="health", result="skipped").inc()
            return None
        try:
            self.bridge.maybe_reconnect()
            snapshot = self.health()
        except Exception:  # noqa: BLE001
            self.log.exception("Health check failed")
            metrics.SCHEDULER_CYCLES.labels(tick="health", result="failure").inc()
            return None
        finally:
            self._health_lock.release()

        metrics.UNPROCESSED_CHANGES.set(snapshot.unprocessed)
        metrics.PROCESSING_LAG.set(snapshot.lag_seconds)
        metrics.BOTTLENECKED_CHANGES.set(snapshot.bottlenecked)
        metrics.SCHEDULER_CYCLES.labels(tick="health", result="success").inc()
        self.state.last_health = snapshot
        if snapshot.healthy:
            self.log.info("Sync health OK", extra={"unprocessed": snapshot.unprocessed, "lag_seconds": snapshot.lag_seconds})
        else:
            self.log.warning("Sync health degraded", extra={"reasons": snapshot.reasons})
        return snapshot

    def health(self) -> HealthSnapshot:
        lag_threshold = timedelta(seconds=self.settings.health_lag_threshold_seconds)
        lag = self.scanner.fetch_oldest_unprocessed_age()
        unprocessed = self.scanner.count_unprocessed()
        bottlenecked = self.scanner.count_bottlenecked(lag_threshold)
        failed = self.scanner.count_failed()
        stuck = self.is_stuck()

        reasons = []
        if lag is not None and lag > lag_threshold:
            reasons.append(f"processing lag {int(lag.total_seconds())}s exceeds {int(lag_threshold.total_seconds())}s")
        if unprocessed >= self.settings.health_backlog_threshold:
            reasons.append(f"{unprocessed} unprocessed changes")
        if bottlenecked:
            reasons.append(f"{bottlenecked} bottlenecked changes")
        if stuck:
            reasons.append("sync tick stuck")

        return HealthSnapshot(
            status=HealthStatus.DEGRADED if reasons else HealthStatus.HEALTHY,
            checked_at=utc_now(),
            lag=lag,
            unprocessed=unprocessed,
            bottlenecked=bottlenecked,
            failed=failed,
            stuck=stuck,
            bridge_state=self.bridge.state.value if self.bridge.enabled else None,
            reasons=reasons,
        )

    def is_stuck(self) -> bool:
        started = self.state.running_since
        if started is None:
            return False
        return utc_now() - started > timedelta(seconds=self.settings.max_processing_time_seconds)

    def run_cleanup_tick(self) -> int:
        """Delete processed changes past retention in bounded batches; returns rows removed."""
        if not self._cleanup_lock.acquire(blocking=False):
            metrics.SCHEDULER_CYCLES.labels(tick="cleanup", result="skipped").inc()
            return 0
        cutoff = utc_now() - timedelta(days=self.settings.cleanup_retention_days)
        total = 0
        try:
            while not self._stop.is_set():
                deleted = self.store.delete_processed_before(cutoff, self.settings.cleanup_batch_size)
                total += deleted
                if deleted < self.settings.cleanup_batch_size:
                    break
        except Exception:  # noqa: BLE001
            self.log.exception("Cleanup failed", extra={"deleted": total})
            metrics.SCHEDULER_CYCLES.labels(tick="cleanup", result="failure").inc()
            return total
        finally:
            self._cleanup_lock.release()
            metrics.CLEANUP_DELETED.inc(total)

        metrics.SCHEDULER_CYCLES.labels(tick="cleanup", result="success").inc()
        self.log.info("Cleanup completed", extra={"deleted": total, "cutoff": cutoff.isoformat()})
        return total

    # -- controls ------------------------------------------------------------

    def set_enabled(self, enabled: bool) -> None:
        self.state.enabled = enabled
        self.log.info("Scheduled sync %s", "enabled" if enabled else "disabled")

    def status(self) -> Dict[str, Any]:
        snapshot = self.state.snapshot()
        snapshot["stuck"] = self.is_stuck()
        snapshot["threads"] = [t.name for t in self._threads if t.is_alive()]
        return snapshot

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        loops = [
            ("sync-main", self.settings.poll_interval_seconds, self.run_main_tick),
            ("sync-health", self.settings.health_check_interval_seconds, self.run_health_tick),
            ("sync-cleanup", self.settings.cleanup_interval_seconds, self.run_cleanup_tick),
        ]
        for name, interval, tick in loops:
            thread = threading.Thread(target=self._loop, args=(name, interval, tick), name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        self.log.info(
            "Scheduler started",
            extra={"poll_interval": self.settings.poll_interval_seconds, "enabled": self.state.enabled},
        )

    def _loop(self, name: str, interval: float, tick: Callable[[], Any]) -> None:
        while not self._stop.is_set():
            try:
                tick()
            except Exception:  # noqa: BLE001
                self.log.exception("Ticker iteration failed", extra={"ticker": name})
            if self._stop.wait(interval):
                break

    def stop(self, wait_for_webhooks: bool = True) -> None:
        """Signal the tickers, wait for in-flight ticks, then shut down webhook delivery."""
        self._stop.set()
        timeout = self.settings.max_processing_time_seconds
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                self.log.error("Ticker did not stop in time", extra={"ticker": thread.name})
        self._threads = []
        # A manual trigger may still hold the main lock.
        if self._main_lock.acquire(timeout=timeout):
            self._main_lock.release()
        self.webhooks.shutdown(wait_for_inflight=wait_for_webhooks)
        self.log.info("Scheduler stopped")
