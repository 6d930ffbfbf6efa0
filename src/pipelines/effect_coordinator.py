from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from src.adapters.cache.redis_cache import RedisCacheInvalidator
from src.adapters.changelog.store import ChangeLogStore
from src.config.settings import Settings
from src.domain.errors import BridgeUnavailableError, PermanentValidationError, SyncError
from src.domain.models.changes import BatchResult, ChangeRecord, EffectOutcome, Operation, StatusUpdate, SyncStatus
from src.pipelines.bridge_cache import BridgeCache
from src.pipelines.webhook_dispatcher import WebhookDispatcher
from src.utils import metrics
from src.utils.clock import utc_now
from src.utils.logging import configure_logging


@dataclass(frozen=True)
class CacheRule:
    key_field: str
    entry_caches: Tuple[str, ...]
    clear_caches: Tuple[str, ...] = ()


TABLE_CACHE_RULES = {
    "subscriptions": CacheRule(
        key_field="msisdn",
        entry_caches=("subscription-by-msisdn", "subscriptions"),
        clear_caches=("subscription-stats",),
    ),
    "users": CacheRule(
        key_field="username",
        entry_caches=("user-by-username", "users", "user-roles"),
    ),
}

# table -> payload field used as the bridge key
BRIDGE_TABLES = {"subscriptions": "msisdn"}


class EffectCoordinator:
    """Turns a batch of ChangeRecords into side effects and status writes.

    Per record: cache invalidation, then bridge refresh, then a fire-and-forget
    webhook hand-off. Only the first two decide the outcome. Status is written
    once per outcome class at the end of the batch, in one transaction.
    """

    def __init__(
        self,
        settings: Settings,
        store: ChangeLogStore,
        cache: RedisCacheInvalidator,
        bridge: BridgeCache,
        webhooks: WebhookDispatcher,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.bridge = bridge
        self.webhooks = webhooks
        self.log = configure_logging("effect_coordinator", settings.log_level)

    def process_batch(self, records: Sequence[ChangeRecord]) -> BatchResult:
        result = BatchResult(fetched=len(records))
        if not records:
            result.message = "No changes to process"
            result.finished_at = utc_now()
            return result

        started = utc_now()
        ordered = sorted(records, key=lambda r: (r.changed_at, r.id))
        superseded_by = self._coalesce(ordered)
        outcomes: Dict[int, EffectOutcome] = {}
        succeeded: List[StatusUpdate] = []
        retried: List[StatusUpdate] = []
        failed: List[StatusUpdate] = []
        blocked = set()

        for record in ordered:
            if record.id in superseded_by:
                continue
            if record.entity_key in blocked:
                outcomes[record.id] = EffectOutcome(change_id=record.id, failure_reason="deferred behind an earlier change")
                continue

            outcome, update = self._process_one(record)
            outcomes[record.id] = outcome
            if outcome.status is SyncStatus.SUCCESS:
                succeeded.append(update)
            else:
                blocked.add(record.entity_key)
                (retried if outcome.status is SyncStatus.RETRY else failed).append(update)

        superseded_count = 0
        for record in ordered:
            if record.id not in superseded_by:
                continue
            latest = _final_superseder(record.id, superseded_by)
            if outcomes[latest].status is SyncStatus.SUCCESS:
                outcomes[record.id] = EffectOutcome(change_id=record.id, status=SyncStatus.SUCCESS, superseded_by=latest)
                succeeded.append(StatusUpdate(change_id=record.id, attempt_count=record.attempt_count))
                superseded_count += 1
            else:
                outcomes[record.id] = EffectOutcome(
                    change_id=record.id, superseded_by=latest, failure_reason="superseding change not applied"
                )

        self.store.commit_outcomes(succeeded, retried, failed, at=utc_now())

        result.outcomes = [outcomes[r.id] for r in ordered]
        result.succeeded = len(succeeded)
        result.retried = len(retried)
        result.failed = len(failed)
        result.superseded = superseded_count
        result.deferred = sum(1 for o in result.outcomes if o.status is None)
        result.success = not retried and not failed
        result.finished_at = utc_now()
        result.message = (
            f"Processed {len(records)} changes: {result.succeeded} successful "
            f"({superseded_count} superseded), {result.retried} retry, {result.failed} failed, {result.deferred} deferred"
        )

        metrics.CHANGES_PROCESSED.labels(outcome="success").inc(result.succeeded)
        metrics.CHANGES_PROCESSED.labels(outcome="retry").inc(result.retried)
        metrics.CHANGES_PROCESSED.labels(outcome="failed").inc(result.failed)
        metrics.BATCH_DURATION.observe((result.finished_at - started).total_seconds())
        self.log.info(result.message, extra={"first_id": ordered[0].id, "last_id": ordered[-1].id})
        return result

    def _process_one(self, record: ChangeRecord) -> Tuple[EffectOutcome, StatusUpdate]:
        attempt = record.attempt_count + 1
        outcome = EffectOutcome(change_id=record.id)
        try:
            self._validate(record)
            outcome.cache_invalidated = self._invalidate_for(record)
            outcome.bridge_refreshed = self._refresh_bridge(record)
        except BridgeUnavailableError as exc:
            # The whole downstream is out; wait for reconnection without spending retries.
            outcome.status = SyncStatus.RETRY
            outcome.failure_reason = str(exc)
            self.log.warning("Bridge unavailable; change left for retry", extra={"change_id": record.id})
            return outcome, StatusUpdate(record.id, record.attempt_count, outcome.failure_reason)
        except SyncError as exc:
            if exc.retryable:
                return self._retry_or_fail(record, outcome, attempt, str(exc))
            outcome.status = SyncStatus.FAILED
            if isinstance(exc, PermanentValidationError):
                outcome.failure_reason = f"Invalid change payload: {exc}"
            else:
                outcome.failure_reason = str(exc)
            self.log.error("Change rejected", extra={"change_id": record.id, "error": str(exc)})
            return outcome, StatusUpdate(record.id, max(attempt, self.settings.max_retries), outcome.failure_reason)
        except Exception as exc:  # noqa: BLE001
            self.log.exception("Unexpected error applying change effects", extra={"change_id": record.id})
            return self._retry_or_fail(record, outcome, attempt, f"{type(exc).__name__}: {exc}")

        outcome.status = SyncStatus.SUCCESS
        try:
            outcome.webhooks_queued = self.webhooks.dispatch(record)
        except Exception:  # noqa: BLE001
            self.log.exception("Webhook hand-off failed", extra={"change_id": record.id})
        return outcome, StatusUpdate(record.id, attempt)

    def _retry_or_fail(
        self, record: ChangeRecord, outcome: EffectOutcome, attempt: int, reason: str
    ) -> Tuple[EffectOutcome, StatusUpdate]:
        outcome.failure_reason = reason
        if attempt < self.settings.max_retries:
            outcome.status = SyncStatus.RETRY
            self.log.warning(
                "Change effects failed; will retry",
                extra={"change_id": record.id, "attempt": attempt, "error": reason},
            )
        else:
            outcome.status = SyncStatus.FAILED
            self.log.error(
                "Change effects failed; retries exhausted",
                extra={"change_id": record.id, "attempt": attempt, "error": reason},
            )
        return outcome, StatusUpdate(record.id, attempt, reason)

    def _coalesce(self, ordered: Sequence[ChangeRecord]) -> Dict[int, int]:
        """Map each record to the next change for the same entity inside the duplicate window."""
        window = timedelta(seconds=self.settings.duplicate_window_seconds)
        last_seen: Dict[tuple, ChangeRecord] = {}
        superseded_by: Dict[int, int] = {}
        for record in ordered:
            previous = last_seen.get(record.entity_key)
            if previous is not None and record.changed_at - previous.changed_at <= window:
                superseded_by[previous.id] = record.id
            last_seen[record.entity_key] = record
        return superseded_by

    def _validate(self, record: ChangeRecord) -> None:
        if record.operation is Operation.DELETE:
            if record.old_data is None:
                raise PermanentValidationError(f"DELETE change {record.id} has no old data")
        elif record.new_data is None:
            raise PermanentValidationError(f"{record.operation.value} change {record.id} has no new data")

        rule = TABLE_CACHE_RULES.get(record.table_name)
        if rule and record.data_value(rule.key_field) is None:
            raise PermanentValidationError(f"change {record.id} on {record.table_name} is missing {rule.key_field}")

    def _invalidate_for(self, record: ChangeRecord) -> bool:
        rule = TABLE_CACHE_RULES.get(record.table_name)
        if rule is None:
            return True
        key = str(record.data_value(rule.key_field))
        for cache_name in rule.entry_caches:
            self.cache.evict(cache_name, key)
            metrics.CACHE_INVALIDATIONS.labels(cache=cache_name, kind="evict").inc()
        for cache_name in rule.clear_caches:
            self.cache.clear(cache_name)
            metrics.CACHE_INVALIDATIONS.labels(cache=cache_name, kind="clear").inc()
        return True

    def _refresh_bridge(self, record: ChangeRecord) -> bool:
        key_field = BRIDGE_TABLES.get(record.table_name)
        if key_field is None:
            return True
        value = record.data_value(key_field)
        outcome = self.bridge.refresh(str(value) if value is not None else None, change=record)
        return outcome.success

    def reprocess(self, change_id: int) -> bool:
        """Reset a FAILED change to PENDING with a fresh retry budget."""
        reset = self.store.reset_failed(change_id)
        if reset:
            self.log.info("Change reset for reprocessing", extra={"change_id": change_id})
        else:
            self.log.warning("Reprocess ignored; change is not FAILED", extra={"change_id": change_id})
        return reset

    def invalidate_cache(self, cache_name: str, key: Optional[str] = None) -> int:
        """Manual invalidation: evict one key, or clear the cache when no key is given."""
        if key is None:
            removed = self.cache.clear(cache_name)
            metrics.CACHE_INVALIDATIONS.labels(cache=cache_name, kind="clear").inc()
        else:
            removed = int(self.cache.evict(cache_name, key))
            metrics.CACHE_INVALIDATIONS.labels(cache=cache_name, kind="evict").inc()
        self.log.info("Manual cache invalidation", extra={"cache": cache_name, "key": key, "removed": removed})
        return removed


def _final_superseder(change_id: int, superseded_by: Dict[int, int]) -> int:
    while change_id in superseded_by:
        change_id = superseded_by[change_id]
    return change_id
