class SyncError(Exception):
    """Base class for change synchronization failures."""

    retryable = False


class TransientIOError(SyncError):
    """Network or timeout failure talking to a downstream; safe to retry."""

    retryable = True


class CapacityError(SyncError):
    """A downstream (cache backend, bridge) is unavailable; retry later."""

    retryable = True


class BridgeUnavailableError(CapacityError):
    """Raised without a network call while the bridge is DISCONNECTED."""


class PermanentValidationError(SyncError):
    """Malformed change payload; retrying cannot help."""


class ConfigurationError(SyncError):
    """Missing or invalid configuration, raised at startup."""
