from __future__ import annotations

from typing import Dict, List, Optional


class ListingsError(RuntimeError):
    """Base class for every failure raised by the listings pipeline."""

    http_status = 500


class ValidationError(ListingsError):
    """Raised when request input is malformed. Never reaches the network."""

    http_status = 400

    def __init__(self, message: str, details: Optional[List[Dict[str, str]]] = None) -> None:
        super().__init__(message)
        self.details = details or []


class ClientRateLimited(ListingsError):
    """Raised when the local rate limiter refuses an upstream-bound call."""

    http_status = 429

    def __init__(self, reset_at: float, remaining: int = 0, identity: str = "") -> None:
        super().__init__(f"Rate limit exceeded for {identity or 'client'}; resets at {reset_at:.0f}")
        self.reset_at = reset_at
        self.remaining = remaining
        self.identity = identity


class CredentialError(ListingsError):
    """Raised when no upstream access credential can be obtained."""

    http_status = 502


class UpstreamError(ListingsError):
    """Raised when the content API answers with a non-2xx status."""

    http_status = 502

    def __init__(self, status: int, channel: str = "", message: str = "") -> None:
        super().__init__(message or f"Upstream returned HTTP {status} for {channel or 'request'}")
        self.status = status
        self.channel = channel


class NetworkError(ListingsError):
    """Raised on transport failure or timeout talking to the content API."""

    http_status = 502

    def __init__(self, message: str, channel: str = "", timeout: bool = False) -> None:
        super().__init__(message)
        self.channel = channel
        self.timeout = timeout
        if timeout:
            self.http_status = 504


class AggregateError(ListingsError):
    """Raised when every requested channel failed."""

    http_status = 502

    def __init__(self, failures: Dict[str, ListingsError]) -> None:
        names = ", ".join(sorted(failures)) or "none"
        super().__init__(f"All channels failed: {names}")
        self.failures = failures

    def channel_details(self) -> List[Dict[str, object]]:
        """Per-channel failure kind, in the order the channels were requested."""
        details: List[Dict[str, object]] = []
        for channel, exc in self.failures.items():
            entry: Dict[str, object] = {"channel": channel, "type": type(exc).__name__, "message": str(exc)}
            if isinstance(exc, UpstreamError):
                entry["status"] = exc.status
            elif isinstance(exc, NetworkError):
                entry["timeout"] = exc.timeout
            elif isinstance(exc, ClientRateLimited):
                entry["resetAt"] = int(exc.reset_at * 1000)
            details.append(entry)
        return details
