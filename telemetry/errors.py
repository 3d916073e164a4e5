from __future__ import annotations


class TelemetryError(Exception):
    """Base class for telemetry core failures."""


class ChannelConnectionError(TelemetryError):
    """The live channel is down or could not be opened. Non-fatal, drives reconnect backoff."""


class SubscriptionError(TelemetryError):
    def __init__(self, device_id: str, message: str):
        super().__init__(f"subscription rejected for {device_id}: {message}")
        self.device_id = device_id
        self.reason = message


class NormalizationError(TelemetryError):
    """A frame or row could not be turned into a canonical sample."""

    def __init__(self, reason: str, device_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.device_id = device_id


class QueryError(TelemetryError):
    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
