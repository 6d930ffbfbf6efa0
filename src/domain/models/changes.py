from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    RETRY = "RETRY"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class ChangeRecord:
    id: int
    table_name: str
    operation: Operation
    entity_id: int
    old_data: Optional[Dict[str, Any]]
    new_data: Optional[Dict[str, Any]]
    changed_at: datetime
    change_source: Optional[str] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    error_message: Optional[str] = None
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.operation = Operation(self.operation)
        self.sync_status = SyncStatus(self.sync_status)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChangeRecord":
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            operation=row["operation"],
            entity_id=row["entity_id"],
            old_data=row.get("old_data"),
            new_data=row.get("new_data"),
            changed_at=row["changed_at"],
            change_source=row.get("change_source"),
            processed=bool(row.get("processed")),
            processed_at=row.get("processed_at"),
            sync_status=row.get("sync_status") or SyncStatus.PENDING,
            error_message=row.get("error_message"),
            attempt_count=row.get("attempt_count") or 0,
            last_attempt_at=row.get("last_attempt_at"),
        )

    @property
    def entity_key(self):
        return (self.table_name, self.entity_id)

    @property
    def current_data(self) -> Optional[Dict[str, Any]]:
        """Freshest snapshot available: new data, or old data for deletes."""
        return self.new_data if self.new_data is not None else self.old_data

    def data_value(self, field_name: str) -> Optional[Any]:
        for data in (self.new_data, self.old_data):
            if data and data.get(field_name) is not None:
                return data[field_name]
        return None

    @property
    def msisdn(self) -> Optional[str]:
        value = self.data_value("msisdn")
        return str(value) if value is not None else None

    @property
    def subscription_status(self) -> Optional[str]:
        if self.new_data:
            return self.new_data.get("status")
        return None

    def is_status_change(self) -> bool:
        if self.operation is not Operation.UPDATE or not self.old_data or not self.new_data:
            return False
        old_status = self.old_data.get("status")
        new_status = self.new_data.get("status")
        return old_status is not None and new_status is not None and old_status != new_status


@dataclass
class EffectOutcome:
    change_id: int
    cache_invalidated: bool = False
    bridge_refreshed: bool = False
    webhooks_queued: int = 0
    failure_reason: Optional[str] = None
    status: Optional[SyncStatus] = None
    superseded_by: Optional[int] = None


@dataclass
class StatusUpdate:
    """One row of a batch status write."""

    change_id: int
    attempt_count: int
    error_message: Optional[str] = None


@dataclass
class BatchResult:
    fetched: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    superseded: int = 0
    deferred: int = 0
    outcomes: List[EffectOutcome] = field(default_factory=list)
    message: str = ""
    success: bool = True
    finished_at: Optional[datetime] = None

    @classmethod
    def skipped(cls, message: str) -> "BatchResult":
        return cls(success=False, message=message)


@dataclass
class ChangeStatistics:
    total: int = 0
    unprocessed: int = 0
    pending: int = 0
    retry: int = 0
    success: int = 0
    failed: int = 0
    oldest_unprocessed_at: Optional[datetime] = None
    avg_processing_seconds: Optional[float] = None


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"


@dataclass
class HealthSnapshot:
    status: HealthStatus
    checked_at: datetime
    lag: Optional[timedelta] = None
    unprocessed: int = 0
    bottlenecked: int = 0
    failed: int = 0
    stuck: bool = False
    bridge_state: Optional[str] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def lag_seconds(self) -> int:
        return int(self.lag.total_seconds()) if self.lag else 0
