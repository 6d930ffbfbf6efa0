import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from src.config.settings import Settings
from src.domain.errors import CapacityError, PermanentValidationError, TransientIOError
from src.utils.logging import configure_logging

RETRY_STATUSES = {429, 500, 502, 503, 504}


class BridgeClient:
    """HTTP client for the downstream subscriber system mirrored by BridgeCache."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.base_url = settings.bridge_base_url
        self.max_attempts = settings.bridge_max_retries
        self.retry_delay = settings.bridge_retry_delay_seconds
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=httpx.BasicAuth(settings.bridge_username, settings.bridge_password),
            timeout=settings.bridge_timeout_seconds,
            verify=settings.bridge_validate_certificates,
            headers={"X-Source": settings.pipeline_name},
            transport=transport,
        )
        self.log = configure_logging("bridge_client", settings.log_level)

    def close(self) -> None:
        self._client.close()

    def _api(self, path: str) -> str:
        return f"/api/{self.settings.bridge_api_version}/{path.lstrip('/')}"

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send with bounded retries; translate failures into the sync error taxonomy."""
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.request(method, url, **kwargs)
            except httpx.ConnectError as exc:
                error = CapacityError(f"Bridge unreachable at {self.base_url}: {exc}")
            except httpx.TimeoutException as exc:
                error = TransientIOError(f"Bridge call timed out: {method} {url}: {exc}")
            except httpx.TransportError as exc:
                error = TransientIOError(f"Bridge transport error: {method} {url}: {exc}")
            else:
                if response.status_code not in RETRY_STATUSES:
                    return response
                error = TransientIOError(f"Bridge returned {response.status_code} for {method} {url}")

            if attempt >= self.max_attempts:
                raise error
            delay = self.retry_delay * (2 ** (attempt - 1))
            self.log.warning(
                "Retrying bridge call",
                extra={"url": url, "attempt": attempt, "delay": delay, "error": str(error)},
            )
            self._sleep(delay)

    def health(self) -> bool:
        response = self._request("GET", "/api/health")
        return response.is_success

    def fetch_subscriber(self, key: str) -> Optional[Dict[str, Any]]:
        """Authoritative state for ``key``; None when the downstream does not know it."""
        response = self._request("GET", self._api(f"subscribers/{key}"))
        if response.status_code == 404:
            return None
        _raise_for_client_error(response, key)
        return response.json()

    def list_subscribers(self, page_size: int = 500) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 0
        while True:
            response = self._request("GET", self._api("subscribers"), params={"page": page, "size": page_size})
            _raise_for_client_error(response, None)
            body = response.json()
            chunk = body.get("items", []) if isinstance(body, dict) else body
            items.extend(chunk)
            if len(chunk) < page_size:
                return items
            page += 1


def _raise_for_client_error(response: httpx.Response, key: Optional[str]) -> None:
    if response.is_success:
        return
    if response.status_code in (401, 403):
        raise CapacityError(f"Bridge rejected credentials ({response.status_code})")
    raise PermanentValidationError(f"Bridge rejected request for key {key!r}: {response.status_code} {response.text[:200]}")
