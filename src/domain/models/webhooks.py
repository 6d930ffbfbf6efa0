from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class DeliveryResult(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


@dataclass
class WebhookAttempt:
    endpoint: str
    payload: Dict[str, Any]
    attempt_number: int
    scheduled_at: datetime
    result: DeliveryResult = DeliveryResult.PENDING
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class WebhookTestResult:
    endpoint: str
    success: bool
    latency_ms: float
    message: str
    status_code: Optional[int] = None
    error: Optional[str] = None
