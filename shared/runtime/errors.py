from __future__ import annotations

from typing import Iterable, List, Optional


# ======================================================================
# Base
# ======================================================================

class StreamRelayError(RuntimeError):
    """Base class for every error raised by the relay runtime."""


# ======================================================================
# Configuration
# ======================================================================

class ValidationError(StreamRelayError):
    """
    Raised for malformed recurrence or configuration input.
    Never retried.
    """

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


# ======================================================================
# External credentials / API
# ======================================================================

class AuthError(StreamRelayError):
    """External credentials were rejected."""


class TokenExpired(AuthError):
    """Refresh token expired or revoked (invalid_grant)."""


class InvalidClient(AuthError):
    """OAuth client id / secret rejected (invalid_client)."""


class TransientError(StreamRelayError):
    """Network or timeout class failure. Safe to retry."""


class BroadcastApiError(StreamRelayError):
    """Non-retryable rejection from the broadcast API."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ======================================================================
# Process / resources
# ======================================================================

class ProcessCrash(StreamRelayError):
    """Relay process died by signal or nonzero exit code."""

    def __init__(self, stream_id: str, returncode: Optional[int]):
        super().__init__(f"[{stream_id}] relay process crashed (code={returncode})")
        self.stream_id = stream_id
        self.returncode = returncode


class ResourceMissing(StreamRelayError):
    """A media file, thumbnail or other referenced resource is absent."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
