import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Set

import httpx

from src.config.settings import Settings
from src.domain.models.changes import ChangeRecord
from src.domain.models.webhooks import DeliveryResult, WebhookAttempt, WebhookTestResult
from src.utils import metrics
from src.utils.clock import utc_now
from src.utils.logging import configure_logging

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "subscription-change-sync/1.0"


def sign_payload(secret: str, body: bytes) -> str:
    """``sha256=`` + base64 HMAC-SHA256 of the exact request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return "sha256=" + base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature)


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def build_change_envelope(change: ChangeRecord) -> Dict[str, Any]:
    envelope = {
        "eventId": str(change.id),
        "eventType": "external_change",
        "tableName": change.table_name,
        "operation": change.operation.value,
        "entityId": change.entity_id,
        "oldData": change.old_data,
        "newData": change.new_data,
        "changedAt": change.changed_at.isoformat(),
        "changeSource": change.change_source,
    }
    if change.table_name == "subscriptions":
        envelope["msisdn"] = change.msisdn
        envelope["statusChange"] = change.is_status_change()
        if envelope["statusChange"]:
            envelope["newStatus"] = change.subscription_status
    return envelope


class WebhookDispatcher:
    """Delivers signed change notifications on a worker pool.

    ``dispatch`` returns as soon as one task per endpoint is queued, so a slow or
    dead endpoint never holds up the batch loop or the other endpoints. Final
    delivery failures are logged and counted; they never touch ChangeRecords.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self.enabled = settings.webhook_enabled
        self.endpoints: List[str] = list(settings.webhook_endpoints)
        self.secret = settings.webhook_secret
        self.log = configure_logging("webhook_dispatcher", settings.log_level)

        self._client = httpx.Client(
            timeout=settings.webhook_timeout_seconds,
            headers={"User-Agent": USER_AGENT, "Content-Type": "application/json"},
            transport=transport,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.webhook_workers, thread_name_prefix="webhook"
        )
        self._stopping = threading.Event()
        self._inflight: Set[Future] = set()
        self._inflight_lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def dispatch(self, change: ChangeRecord) -> int:
        """Queue one delivery per configured endpoint; returns how many were queued."""
        if not self.enabled or not self.endpoints or self._stopping.is_set():
            return 0
        payload = build_change_envelope(change)
        queued = 0
        for endpoint in self.endpoints:
            future = self._executor.submit(self.deliver, endpoint, payload)
            with self._inflight_lock:
                self._inflight.add(future)
            future.add_done_callback(self._forget)
            queued += 1
        return queued

    def deliver(self, endpoint: str, payload: Dict[str, Any]) -> WebhookAttempt:
        """Deliver with exponential backoff; returns the last attempt made."""
        body = serialize_payload(payload)
        delay = self.settings.webhook_retry_delay_seconds
        attempt = WebhookAttempt(endpoint=endpoint, payload=payload, attempt_number=0, scheduled_at=utc_now())

        for number in range(1, self.settings.webhook_max_retries + 1):
            attempt = WebhookAttempt(endpoint=endpoint, payload=payload, attempt_number=number, scheduled_at=utc_now())
            self._attempt(attempt, body)
            if attempt.result is DeliveryResult.DELIVERED:
                with self._inflight_lock:
                    self.delivered += 1
                metrics.WEBHOOK_DELIVERIES.labels(result="delivered").inc()
                return attempt

            if number < self.settings.webhook_max_retries:
                self.log.warning(
                    "Webhook attempt failed; backing off",
                    extra={"endpoint": endpoint, "attempt": number, "delay": delay, "error": attempt.error},
                )
                # Interrupted on shutdown; the delivery is abandoned.
                if self._stopping.wait(delay):
                    break
                delay = min(delay * 2, self.settings.webhook_max_retry_delay_seconds)

        with self._inflight_lock:
            self.failed += 1
        metrics.WEBHOOK_DELIVERIES.labels(result="failed").inc()
        self.log.error(
            "Webhook delivery exhausted",
            extra={"endpoint": endpoint, "event_id": payload.get("eventId"), "attempts": attempt.attempt_number, "error": attempt.error},
        )
        return attempt

    def test_delivery(self, endpoint: str) -> WebhookTestResult:
        """One delivery of a synthetic payload; purely diagnostic."""
        payload = {
            "eventId": f"test-{uuid.uuid4()}",
            "eventType": "test",
            "message": "This is a test webhook notification",
            "sentAt": utc_now().isoformat(),
        }
        attempt = WebhookAttempt(endpoint=endpoint, payload=payload, attempt_number=1, scheduled_at=utc_now())
        started = time.monotonic()
        self._attempt(attempt, serialize_payload(payload))
        latency_ms = (time.monotonic() - started) * 1000.0
        ok = attempt.result is DeliveryResult.DELIVERED
        self.log.info("Webhook test delivery", extra={"endpoint": endpoint, "success": ok, "latency_ms": round(latency_ms, 1)})
        return WebhookTestResult(
            endpoint=endpoint,
            success=ok,
            latency_ms=latency_ms,
            message="Webhook test successful" if ok else f"Webhook test failed: {attempt.error}",
            status_code=attempt.status_code,
            error=None if ok else attempt.error,
        )

    def _attempt(self, attempt: WebhookAttempt, body: bytes) -> None:
        headers = {
            "X-Webhook-Timestamp": str(int(time.time() * 1000)),
            "X-Webhook-Event": str(attempt.payload.get("eventType", "")),
        }
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, body)

        metrics.WEBHOOK_ATTEMPTS.inc()
        try:
            response = self._client.post(attempt.endpoint, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            attempt.result = DeliveryResult.FAILED
            attempt.error = f"timeout: {exc}"
            return
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            attempt.result = DeliveryResult.FAILED
            attempt.error = f"{type(exc).__name__}: {exc}"
            return

        attempt.status_code = response.status_code
        if response.is_success:
            attempt.result = DeliveryResult.DELIVERED
        else:
            attempt.result = DeliveryResult.FAILED
            attempt.error = f"HTTP {response.status_code}"

    def _forget(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until queued deliveries finish; True if nothing is left in flight."""
        with self._inflight_lock:
            pending = set(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def statistics(self) -> Dict[str, Any]:
        with self._inflight_lock:
            inflight = len(self._inflight)
        return {
            "enabled": self.enabled,
            "endpoints": list(self.endpoints),
            "delivered": self.delivered,
            "failed": self.failed,
            "in_flight": inflight,
            "max_retries": self.settings.webhook_max_retries,
            "timeout_seconds": self.settings.webhook_timeout_seconds,
        }

    def shutdown(self, wait_for_inflight: bool = True) -> None:
        """Stop accepting work. Without waiting, queued deliveries are cancelled
        and backoff sleeps end immediately."""
        self.log.info("Shutting down webhook dispatcher", extra={"wait": wait_for_inflight})
        self.enabled = False
        if not wait_for_inflight:
            self._stopping.set()
        self._executor.shutdown(wait=wait_for_inflight, cancel_futures=not wait_for_inflight)
        self._stopping.set()
        self._client.close()
