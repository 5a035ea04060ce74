"""Stable error taxonomy for the justification verification service.

Every failure the service surfaces is a ``JVSError`` carrying:
- a stable ``code`` string suitable for programmatic handling,
- a ``retryable`` flag and ``http_status`` for transport layers,
- structured ``details`` for debugging without parsing messages.

Subclasses group codes into families so callers can ``except`` on the
family (``RemoteServiceError``, ``LifecycleInvariantViolation``...) and
transports can still render one envelope for all of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


# Request validation
JVS_E_INVALID_ARGUMENT = "JVS_E_INVALID_ARGUMENT"
JVS_E_TOKEN_EXPIRED = "JVS_E_TOKEN_EXPIRED"
JVS_E_TOKEN_NOT_YET_VALID = "JVS_E_TOKEN_NOT_YET_VALID"
JVS_E_AUTH_REQUIRED = "JVS_E_AUTH_REQUIRED"

# Remote key management
JVS_E_REMOTE = "JVS_E_REMOTE"
JVS_E_DEADLINE_EXCEEDED = "JVS_E_DEADLINE_EXCEEDED"

# Lifecycle invariants
JVS_E_WOULD_ORPHAN_KEY = "JVS_E_WOULD_ORPHAN_KEY"
JVS_E_INVALID_STATE_TRANSITION = "JVS_E_INVALID_STATE_TRANSITION"
JVS_E_CONCURRENT_MODIFICATION = "JVS_E_CONCURRENT_MODIFICATION"

# Signing / verification
JVS_E_SIGNING = "JVS_E_SIGNING"
JVS_E_KEY_UNAVAILABLE = "JVS_E_KEY_UNAVAILABLE"
JVS_E_NO_PRIMARY_KEY = "JVS_E_NO_PRIMARY_KEY"
JVS_E_SIGNATURE_INVALID = "JVS_E_SIGNATURE_INVALID"

# Rotation
JVS_E_ROTATION_FAILED = "JVS_E_ROTATION_FAILED"

# Generic
JVS_E_CONFIG = "JVS_E_CONFIG"
JVS_E_INTERNAL = "JVS_E_INTERNAL"


@dataclass
class JVSError(Exception):
    """Base service exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(JVSError):
    """Caller input was rejected; nothing was signed or changed."""

    def __init__(self, message: str, *, code: str = JVS_E_INVALID_ARGUMENT, http_status: int = 400, **details: Any):
        super().__init__(code=code, message=message, retryable=False, http_status=http_status, details=details)


class RemoteServiceError(JVSError):
    """The key management service failed or did not answer in time."""

    def __init__(self, message: str, *, code: str = JVS_E_REMOTE, retryable: bool = True, **details: Any):
        super().__init__(code=code, message=message, retryable=retryable, http_status=503, details=details)


class LifecycleInvariantViolation(JVSError):
    """A requested change would break a key lifecycle invariant."""

    def __init__(self, message: str, *, code: str, **details: Any):
        super().__init__(code=code, message=message, retryable=False, http_status=409, details=details)


class WouldOrphanKey(LifecycleInvariantViolation):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=JVS_E_WOULD_ORPHAN_KEY, **details)


class InvalidStateTransition(LifecycleInvariantViolation):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=JVS_E_INVALID_STATE_TRANSITION, **details)


class ConcurrentModification(LifecycleInvariantViolation):
    """The version set changed between read and write; retry the operation."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=JVS_E_CONCURRENT_MODIFICATION, **details)
        self.retryable = True


class SigningError(JVSError):
    """The remote signature could not be turned into a token signature."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=JVS_E_SIGNING, message=message, retryable=False, http_status=500, details=details)


class KeyUnavailable(JVSError):
    def __init__(self, message: str, *, code: str = JVS_E_KEY_UNAVAILABLE, **details: Any):
        super().__init__(code=code, message=message, retryable=True, http_status=503, details=details)


class NoPrimaryKey(KeyUnavailable):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=JVS_E_NO_PRIMARY_KEY, **details)


class SignatureInvalid(JVSError):
    def __init__(self, message: str = "token signature could not be verified", **details: Any):
        super().__init__(code=JVS_E_SIGNATURE_INVALID, message=message, retryable=False, http_status=401, details=details)


class InternalError(JVSError):
    """Opaque failure returned to callers; the cause is only logged."""

    def __init__(self, message: str = "internal error", **details: Any):
        super().__init__(code=JVS_E_INTERNAL, message=message, retryable=False, http_status=500, details=details)


class ConfigError(JVSError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=JVS_E_CONFIG, message=message, retryable=False, http_status=500, details=details)


class KeyRotationError(JVSError):
    """One or more rotation steps failed for a single key.

    ``outcome`` holds whatever the engine managed to do before and after the
    failing steps, and ``failures`` lists the step errors in order.
    """

    def __init__(self, key: str, failures: list, outcome: Any = None):
        super().__init__(
            code=JVS_E_ROTATION_FAILED,
            message=f"rotation of {key} failed ({len(failures)} step(s))",
            retryable=True,
            http_status=500,
            details={"key": key, "errors": [str(e) for e in failures]},
        )
        self.key = key
        self.failures = list(failures)
        self.outcome = outcome


class AggregateRotationError(JVSError):
    """A rotation batch finished with per-key failures."""

    def __init__(self, failures: Dict[str, Exception]):
        super().__init__(
            code=JVS_E_ROTATION_FAILED,
            message=f"rotation failed for {len(failures)} key(s)",
            retryable=True,
            http_status=500,
            details={"failures": {k: str(v) for k, v in sorted(failures.items())}},
        )
        self.failures = dict(failures)


def jvs_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> JVSError:
    return JVSError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def error_code(exc: BaseException, default: Optional[str] = None) -> Optional[str]:
    """Return the stable code of ``exc`` (or ``default`` for foreign exceptions)."""
    if isinstance(exc, JVSError):
        return exc.code
    return default
