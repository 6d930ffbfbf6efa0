from datetime import timedelta
from typing import List, Optional, Sequence

from src.adapters.changelog.store import ChangeLogStore
from src.config.settings import Settings
from src.domain.models.changes import ChangeRecord, ChangeStatistics
from src.utils.clock import utc_now
from src.utils.logging import configure_logging


class ChangeScanner:
    """Read-only view over the ChangeLog: bounded batches and backlog signals."""

    def __init__(self, settings: Settings, store: ChangeLogStore):
        self.settings = settings
        self.store = store
        self.log = configure_logging("change_scanner", settings.log_level)

    def _tables(self, table_filter: Optional[Sequence[str]]) -> Optional[List[str]]:
        tables = table_filter if table_filter is not None else self.settings.sync_tables
        return list(tables) if tables else None

    def fetch_batch(self, max_size: int, table_filter: Optional[Sequence[str]] = None) -> List[ChangeRecord]:
        """Oldest-first PENDING/RETRY changes, at most ``max_size`` of them."""
        if max_size < 1:
            return []
        retry_ready_before = utc_now() - timedelta(seconds=self.settings.retry_delay_seconds)
        records = self.store.fetch_pending(max_size, retry_ready_before, self._tables(table_filter))
        if records:
            self.log.debug("Fetched change batch", extra={"count": len(records), "first_id": records[0].id})
        return records

    def fetch_oldest_unprocessed_age(self, table_filter: Optional[Sequence[str]] = None) -> Optional[timedelta]:
        oldest = self.store.oldest_unprocessed_changed_at(self._tables(table_filter))
        if oldest is None:
            return None
        return max(utc_now() - oldest, timedelta(0))

    def count_unprocessed(self, table_filter: Optional[Sequence[str]] = None) -> int:
        return self.store.count_unprocessed(self._tables(table_filter))

    def count_bottlenecked(self, threshold_age: timedelta, table_filter: Optional[Sequence[str]] = None) -> int:
        return self.store.count_changed_before(utc_now() - threshold_age, self._tables(table_filter))

    def count_failed(self) -> int:
        return self.store.count_failed()

    def statistics(self, since=None) -> ChangeStatistics:
        return self.store.statistics(since)
