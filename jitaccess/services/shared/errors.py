"""
Domain error kinds shared by every JIT access component.

Each kind carries the HTTP status it surfaces as. Routes raise these directly;
the exception handler installed in main.py turns them into JSON responses.
The reconcilers use the same hierarchy to decide between requeue and failure:

  TransientError   → retried with backoff, never user-visible
  ExternalFailure  → cloud or cluster API refused the call
  everything else  → surfaced to the caller immediately
"""

from typing import Optional


class JitError(Exception):
    status_code: int = 500
    reason: str = "InternalError"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.message}


# ── Caller-facing ────────────────────────────────────────────────────────────

class ValidationFailed(JitError):
    status_code = 400
    reason = "ValidationFailed"


class InvalidDuration(ValidationFailed):
    reason = "InvalidDuration"


class PolicyViolation(JitError):
    status_code = 400
    reason = "PolicyViolation"


class Unauthenticated(JitError):
    status_code = 401
    reason = "Unauthenticated"


class PermissionDenied(JitError):
    status_code = 403
    reason = "PermissionDenied"


class NotFound(JitError):
    status_code = 404
    reason = "NotFound"


class Conflict(JitError):
    status_code = 409
    reason = "Conflict"


# ── Retryable ────────────────────────────────────────────────────────────────

class TransientError(JitError):
    status_code = 503
    reason = "Transient"


class TransientCloudError(TransientError):
    reason = "TransientCloudError"


class TransientClusterError(TransientError):
    reason = "TransientClusterError"


class DeadlineExceeded(TransientError):
    reason = "DeadlineExceeded"


# ── Cloud / cluster API ──────────────────────────────────────────────────────

class ExternalFailure(JitError):
    status_code = 502
    reason = "ExternalFailure"


class AuthDenied(ExternalFailure):
    reason = "AuthDenied"


class InvalidPolicy(ExternalFailure):
    reason = "InvalidPolicy"


class CompensationFailed(ExternalFailure):
    """A partial grant could not be rolled back; a live binding may remain."""

    reason = "CompensationFailed"


# ── Startup ──────────────────────────────────────────────────────────────────

class FatalConfigError(JitError):
    reason = "FatalConfig"
