"""Fakes and factories shared by the sync worker tests.

The fakes mirror the adapter interfaces closely enough that the coordinator,
scanner and scheduler run unmodified against them.
"""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from src.domain.models.changes import ChangeRecord, ChangeStatistics, Operation, StatusUpdate, SyncStatus
from src.utils.clock import utc_now

_ids = itertools.count(1)


class InMemoryChangeLog:
    """ChangeLogStore stand-in that applies the same status-write guards as the SQL."""

    def __init__(self, records: Sequence[ChangeRecord] = ()):
        self.rows: Dict[int, ChangeRecord] = {r.id: r for r in records}
        self.commits: List[dict] = []
        self.fail_next_commit: Optional[Exception] = None

    def add(self, *records: ChangeRecord) -> None:
        for record in records:
            self.rows[record.id] = record

    def _unprocessed(self, table_names=None):
        return [
            r
            for r in self.rows.values()
            if not r.processed and (not table_names or r.table_name in table_names)
        ]

    def fetch_pending(self, limit, retry_ready_before, table_names=None):
        def eligible(r):
            return r.sync_status is SyncStatus.PENDING or (
                r.sync_status is SyncStatus.RETRY
                and (r.last_attempt_at is None or r.last_attempt_at <= retry_ready_before)
            )

        waiting = [r for r in self._unprocessed() if not eligible(r)]

        def held_back(r):
            return any(
                w.entity_key == r.entity_key and (w.changed_at, w.id) < (r.changed_at, r.id) for w in waiting
            )

        ready = [r for r in self._unprocessed(table_names) if eligible(r) and not held_back(r)]
        ready.sort(key=lambda r: (r.changed_at, r.id))
        return [replace(r) for r in ready[:limit]]

    def count_unprocessed(self, table_names=None) -> int:
        return len(self._unprocessed(table_names))

    def oldest_unprocessed_changed_at(self, table_names=None):
        return min((r.changed_at for r in self._unprocessed(table_names)), default=None)

    def count_changed_before(self, threshold, table_names=None) -> int:
        return sum(1 for r in self._unprocessed(table_names) if r.changed_at < threshold)

    def count_failed(self) -> int:
        return sum(1 for r in self.rows.values() if r.sync_status is SyncStatus.FAILED)

    def statistics(self, since=None) -> ChangeStatistics:
        rows = [r for r in self.rows.values() if since is None or r.changed_at >= since]
        by_status = {s: sum(1 for r in rows if r.sync_status is s) for s in SyncStatus}
        unprocessed = [r for r in rows if not r.processed]
        return ChangeStatistics(
            total=len(rows),
            unprocessed=len(unprocessed),
            pending=by_status[SyncStatus.PENDING],
            retry=by_status[SyncStatus.RETRY],
            success=by_status[SyncStatus.SUCCESS],
            failed=by_status[SyncStatus.FAILED],
            oldest_unprocessed_at=min((r.changed_at for r in unprocessed), default=None),
        )

    def commit_outcomes(self, succeeded, retried, failed, at) -> None:
        if self.fail_next_commit is not None:
            error, self.fail_next_commit = self.fail_next_commit, None
            raise error
        self.commits.append({"succeeded": list(succeeded), "retried": list(retried), "failed": list(failed)})
        for update in succeeded:
            self._apply(update, SyncStatus.SUCCESS, at, allowed=lambda s: s is not SyncStatus.SUCCESS)
        for update in retried:
            self._apply(update, SyncStatus.RETRY, at, allowed=lambda s: s in (SyncStatus.PENDING, SyncStatus.RETRY))
        for update in failed:
            self._apply(update, SyncStatus.FAILED, at, allowed=lambda s: s is not SyncStatus.SUCCESS)

    def _apply(self, update: StatusUpdate, status: SyncStatus, at: datetime, allowed) -> None:
        row = self.rows[update.change_id]
        if not allowed(row.sync_status):
            return
        row.sync_status = status
        row.processed = status is not SyncStatus.RETRY
        row.processed_at = at if row.processed else None
        row.error_message = None if status is SyncStatus.SUCCESS else update.error_message
        row.attempt_count = max(row.attempt_count, update.attempt_count)
        row.last_attempt_at = at

    def delete_processed_before(self, cutoff, limit) -> int:
        doomed = sorted(
            r.id for r in self.rows.values() if r.processed and r.processed_at is not None and r.processed_at < cutoff
        )[:limit]
        for change_id in doomed:
            del self.rows[change_id]
        return len(doomed)

    def reset_failed(self, change_id) -> bool:
        row = self.rows.get(change_id)
        if row is None or row.sync_status is not SyncStatus.FAILED:
            return False
        row.processed = False
        row.processed_at = None
        row.sync_status = SyncStatus.PENDING
        row.error_message = None
        row.attempt_count = 0
        row.last_attempt_at = None
        return True

    def get_change(self, change_id):
        row = self.rows.get(change_id)
        return replace(row) if row else None

    def list_changes(self, status=None, limit=50, offset=0):
        rows = [r for r in self.rows.values() if status is None or r.sync_status is SyncStatus(status)]
        rows.sort(key=lambda r: (r.changed_at, r.id), reverse=True)
        return [replace(r) for r in rows[offset : offset + limit]]


class FakeCache:
    """Records evict/clear calls; queued exceptions are raised by the next evicts."""

    def __init__(self):
        self.evictions: List[tuple] = []
        self.clears: List[str] = []
        self.errors: List[Exception] = []

    def evict(self, cache_name: str, key: str) -> bool:
        if self.errors:
            raise self.errors.pop(0)
        self.evictions.append((cache_name, key))
        return True

    def clear(self, cache_name: str) -> int:
        self.clears.append(cache_name)
        return 1

    def ping(self) -> bool:
        return True


class FakeBridgeClient:
    def __init__(self, subscribers: Optional[Dict[str, dict]] = None):
        self.subscribers = dict(subscribers or {})
        self.healthy = True
        self.errors: List[Exception] = []
        self.fetched: List[str] = []
        self.closed = False

    def health(self) -> bool:
        return self.healthy

    def fetch_subscriber(self, key: str):
        self.fetched.append(key)
        if self.errors:
            raise self.errors.pop(0)
        return self.subscribers.get(key)

    def list_subscribers(self, page_size: int = 500):
        if self.errors:
            raise self.errors.pop(0)
        return list(self.subscribers.values())

    def close(self) -> None:
        self.closed = True


class FakeWebhooks:
    def __init__(self, endpoints: int = 1):
        self.endpoints = endpoints
        self.dispatched: List[ChangeRecord] = []
        self.shutdown_calls: List[bool] = []

    def dispatch(self, change: ChangeRecord) -> int:
        self.dispatched.append(change)
        return self.endpoints

    def statistics(self) -> dict:
        return {"dispatched": len(self.dispatched)}

    def shutdown(self, wait_for_inflight: bool = True) -> None:
        self.shutdown_calls.append(wait_for_inflight)


def make_change(
    change_id: Optional[int] = None,
    table_name: str = "subscriptions",
    operation: Operation = Operation.UPDATE,
    entity_id: int = 1,
    msisdn: Optional[str] = "46700000001",
    changed_at: Optional[datetime] = None,
    age_seconds: float = 60,
    **overrides,
) -> ChangeRecord:
    new_data = {"id": entity_id, "status": "ACTIVE"}
    if table_name == "users":
        new_data["username"] = f"user{entity_id}"
    elif msisdn is not None:
        new_data["msisdn"] = msisdn
    old_data = dict(new_data, status="SUSPENDED")
    if operation is Operation.INSERT:
        old_data = None
    elif operation is Operation.DELETE:
        new_data = None
    fields = dict(
        id=change_id if change_id is not None else next(_ids) + 1000,
        table_name=table_name,
        operation=operation,
        entity_id=entity_id,
        old_data=old_data,
        new_data=new_data,
        changed_at=changed_at or utc_now() - timedelta(seconds=age_seconds),
        change_source="trigger",
    )
    fields.update(overrides)
    return ChangeRecord(**fields)


