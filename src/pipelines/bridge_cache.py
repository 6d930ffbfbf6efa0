import threading
from collections import deque
from datetime import timedelta
from typing import Any, Dict, Optional

from src.adapters.bridge.client import BridgeClient
from src.config.settings import Settings
from src.domain.errors import BridgeUnavailableError, CapacityError, PermanentValidationError, SyncError, TransientIOError
from src.domain.models.bridge import BridgeEntry, BridgeStatus, ConnectionState, RefreshOutcome, RefreshStatus
from src.domain.models.changes import ChangeRecord, Operation
from src.utils import metrics
from src.utils.clock import utc_now
from src.utils.logging import configure_logging

BRIDGE_FIELDS = ("msisdn", "impi", "impu", "status", "updated_at")

_STATE_GAUGE = {
    ConnectionState.CONNECTED: 2,
    ConnectionState.DEGRADED: 1,
    ConnectionState.DISCONNECTED: 0,
}


class BridgeCache:
    """In-process mirror of downstream subscriber state, keyed by MSISDN.

    Entries are only replaced through ``refresh`` and ``resync_all``. Connection
    health is tracked from the outcome of every downstream call:

    * CONNECTED: recent calls succeed.
    * DEGRADED: the error rate over the last ``bridge_health_window`` calls is at
      or above ``bridge_degraded_error_rate``.
    * DISCONNECTED: the downstream refused connections, or
      ``bridge_disconnect_after_failures`` calls failed in a row. Refreshes are
      rejected without a network call until ``check_connection`` succeeds.
    """

    def __init__(self, settings: Settings, client: Optional[BridgeClient]):
        self.settings = settings
        self.enabled = settings.bridge_enabled and client is not None
        self.client = client
        self.log = configure_logging("bridge_cache", settings.log_level)

        self._entries: Dict[str, BridgeEntry] = {}
        self._entries_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._results = deque(maxlen=settings.bridge_health_window)
        self._consecutive_failures = 0
        self._state = ConnectionState.DISCONNECTED
        self._last_error: Optional[str] = None
        self._last_connection_attempt = None
        self._total_refreshes = 0
        self._total_failures = 0
        metrics.BRIDGE_CONNECTED.set(_STATE_GAUGE[self._state])

    @property
    def state(self) -> ConnectionState:
        return self._state

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def entry(self, key: str) -> Optional[BridgeEntry]:
        return self._entries.get(key)

    def entries(self) -> Dict[str, BridgeEntry]:
        with self._entries_lock:
            return dict(self._entries)

    def refresh(self, key: Optional[str], change: Optional[ChangeRecord] = None) -> RefreshOutcome:
        if not self.enabled:
            return RefreshOutcome(key=key, success=True, skipped=True, message="bridge disabled")
        if not key:
            raise PermanentValidationError("Bridge refresh requires a subscriber key")
        if self._state is ConnectionState.DISCONNECTED:
            metrics.BRIDGE_REFRESHES.labels(result="rejected").inc()
            raise BridgeUnavailableError(f"Bridge disconnected: {self._last_error or 'not connected'}")

        with self._state_lock:
            self._total_refreshes += 1
        try:
            value = self.client.fetch_subscriber(key)
            source = RefreshStatus.LIVE
        except (TransientIOError, CapacityError) as exc:
            self._record_call(ok=False, error=exc)
            if not (self.settings.bridge_payload_fallback and change is not None):
                with self._state_lock:
                    self._total_failures += 1
                metrics.BRIDGE_REFRESHES.labels(result="failed").inc()
                raise
            self.log.warning(
                "Bridge fetch failed; using change payload",
                extra={"key": key, "change_id": change.id, "error": str(exc)},
            )
            value = _payload_value(change)
            source = RefreshStatus.PAYLOAD
        else:
            self._record_call(ok=True)

        status = RefreshStatus.REMOVED if value is None else source
        with self._entries_lock:
            if value is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = BridgeEntry(key=key, value=value, last_refreshed_at=utc_now(), refresh_status=status)

        metrics.BRIDGE_REFRESHES.labels(result=status.value.lower()).inc()
        return RefreshOutcome(key=key, success=True, source=status, message=f"entry {status.value.lower()}")

    def resync_all(self) -> RefreshOutcome:
        """Rebuild every entry from the downstream listing; used after outages."""
        if not self.enabled:
            return RefreshOutcome(key=None, success=True, skipped=True, message="bridge disabled")
        try:
            items = self.client.list_subscribers()
        except SyncError as exc:
            self._record_call(ok=False, error=exc)
            self.log.error("Bridge full resync failed", extra={"error": str(exc)})
            return RefreshOutcome(key=None, success=False, message=f"resync failed: {exc}")

        self._record_call(ok=True)
        now = utc_now()
        fresh = {}
        for item in items:
            key = item.get("msisdn")
            if key is None:
                continue
            fresh[str(key)] = BridgeEntry(
                key=str(key), value=item, last_refreshed_at=now, refresh_status=RefreshStatus.LIVE
            )
        with self._entries_lock:
            self._entries = fresh
        self.log.info("Bridge full resync completed", extra={"entries": len(fresh)})
        return RefreshOutcome(key=None, success=True, source=RefreshStatus.LIVE, message=f"{len(fresh)} entries loaded")

    def check_connection(self) -> ConnectionState:
        """Probe the downstream health endpoint; a success resets the health window."""
        if not self.enabled:
            return self._state
        self._last_connection_attempt = utc_now()
        try:
            healthy = self.client.health()
            error = None if healthy else "health endpoint reported failure"
        except SyncError as exc:
            healthy, error = False, str(exc)

        with self._state_lock:
            if healthy:
                self._results.clear()
                self._consecutive_failures = 0
                self._last_error = None
                self._set_state(ConnectionState.CONNECTED)
            else:
                self._last_error = error
                self._set_state(ConnectionState.DISCONNECTED)
        return self._state

    def maybe_reconnect(self) -> ConnectionState:
        if not self.enabled or self._state is not ConnectionState.DISCONNECTED:
            return self._state
        last = self._last_connection_attempt
        interval = timedelta(seconds=self.settings.bridge_reconnect_interval_seconds)
        if last is None or utc_now() - last >= interval:
            return self.check_connection()
        return self._state

    def status(self) -> BridgeStatus:
        with self._state_lock:
            return BridgeStatus(
                enabled=self.enabled,
                state=self._state,
                base_url=self.settings.bridge_base_url,
                entries=len(self._entries),
                total_refreshes=self._total_refreshes,
                total_failures=self._total_failures,
                last_error=self._last_error,
                last_connection_attempt=self._last_connection_attempt,
            )

    def _record_call(self, ok: bool, error: Optional[Exception] = None) -> None:
        with self._state_lock:
            self._results.append(ok)
            if ok:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                self._last_error = str(error)

            failures = self._results.count(False)
            error_rate = failures / len(self._results)
            if not ok and (
                isinstance(error, CapacityError)
                or self._consecutive_failures >= self.settings.bridge_disconnect_after_failures
            ):
                self._set_state(ConnectionState.DISCONNECTED)
            elif error_rate >= self.settings.bridge_degraded_error_rate:
                self._set_state(ConnectionState.DEGRADED)
            else:
                self._set_state(ConnectionState.CONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self.log.warning(
            "Bridge connection state changed",
            extra={"from": self._state.value, "to": state.value, "error": self._last_error},
        )
        self._state = state
        metrics.BRIDGE_CONNECTED.set(_STATE_GAUGE[state])


def _payload_value(change: ChangeRecord) -> Optional[Dict[str, Any]]:
    if change.operation is Operation.DELETE or not change.new_data:
        return None
    return {name: change.new_data[name] for name in BRIDGE_FIELDS if name in change.new_data}
