from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ConnectionState(str, Enum):
    CONNECTED = "CONNECTED"
    DEGRADED = "DEGRADED"
    DISCONNECTED = "DISCONNECTED"


class RefreshStatus(str, Enum):
    LIVE = "LIVE"
    PAYLOAD = "PAYLOAD"
    REMOVED = "REMOVED"


@dataclass(frozen=True)
class BridgeEntry:
    key: str
    value: Optional[Dict[str, Any]]
    last_refreshed_at: datetime
    refresh_status: RefreshStatus


@dataclass
class RefreshOutcome:
    key: Optional[str]
    success: bool
    skipped: bool = False
    source: Optional[RefreshStatus] = None
    message: str = ""


@dataclass
class BridgeStatus:
    enabled: bool
    state: ConnectionState
    base_url: str
    entries: int
    total_refreshes: int
    total_failures: int
    last_error: Optional[str] = None
    last_connection_attempt: Optional[datetime] = None
