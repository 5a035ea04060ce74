"""
jvs_service.backend: key management backend abstraction.

The service never holds private key material. Every key operation goes
through a ``SigningBackend``:

- InMemoryKMS (memory_backend.py): in-process keys for dev/testing.
- CloudKMSBackend (cloudkms.py): Google Cloud KMS (HSM-backed keys).

Every call takes a ``timeout`` in seconds; callers derive it from a
``Deadline`` so a cancelled rotation stops between steps. Backend failures
are raised as ``RemoteServiceError``.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .errors import ConfigError, JVS_E_DEADLINE_EXCEEDED, RemoteServiceError
from .lifecycle import KeyVersion, LifecycleLabel

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0

ENV_BACKEND = "JVS_BACKEND"
ENV_ALLOW_EPHEMERAL_BACKEND = "JVS_ALLOW_EPHEMERAL_BACKEND"

LabelChanges = Mapping[str, Tuple[LifecycleLabel, datetime]]


@dataclass(frozen=True)
class PublicKeyInfo:
    pem: str
    algorithm: str


@runtime_checkable
class SigningBackend(Protocol):
    """Protocol implemented by key management backends."""

    def list_versions(self, key: str, *, timeout: Optional[float] = None) -> List[KeyVersion]:
        """All versions of ``key`` that are not yet DESTROYED."""
        ...

    def get_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion: ...

    def create_version(self, key: str, *, timeout: Optional[float] = None) -> KeyVersion:
        """Create a version labeled NEW."""
        ...

    def update_labels(self, key: str, changes: LabelChanges, *, timeout: Optional[float] = None) -> None:
        """Apply all label changes for ``key`` in one atomic write."""
        ...

    def disable_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion: ...

    def destroy_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion: ...

    def get_public_key(self, name: str, *, timeout: Optional[float] = None) -> PublicKeyInfo: ...

    def asymmetric_sign(self, name: str, digest: bytes, *, timeout: Optional[float] = None) -> bytes:
        """Sign a precomputed digest; returns a DER encoded ECDSA signature."""
        ...

    def list_keys(self, key_ring: str, *, timeout: Optional[float] = None) -> List[str]: ...


class Deadline:
    """Absolute deadline for a multi-call operation.

    ``Deadline(None)`` never expires; per-call timeouts then fall back to
    ``default_call_timeout``.
    """

    def __init__(self, seconds: Optional[float] = None, *, default_call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS):
        self._expires_at = None if seconds is None else time.monotonic() + float(seconds)
        self.default_call_timeout = float(default_call_timeout)
        self._cancelled = False

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def cancel(self) -> None:
        self._cancelled = True

    def expired(self) -> bool:
        if self._cancelled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self) -> None:
        if self.expired():
            raise RemoteServiceError(
                "operation cancelled" if self._cancelled else "deadline exceeded",
                code=JVS_E_DEADLINE_EXCEEDED,
            )

    def remaining(self) -> float:
        """Timeout for the next remote call. Raises once expired."""
        self.check()
        if self._expires_at is None:
            return self.default_call_timeout
        return max(0.0, min(self.default_call_timeout, self._expires_at - time.monotonic()))


def _env_bool(name: str) -> bool:
    return (os.getenv(name, "") or "").strip().lower() in ("1", "true", "yes", "on")


def build_backend_from_env(*, mode_env: str = ENV_BACKEND) -> SigningBackend:
    """Build a backend from environment configuration.

    - JVS_BACKEND=gcp (default): Google Cloud KMS with ambient credentials.
    - JVS_BACKEND=memory: in-process keys; requires JVS_ALLOW_EPHEMERAL_BACKEND=1
      because keys vanish with the process.
    """
    mode = (os.getenv(mode_env, "") or "gcp").strip().lower()

    if mode in ("gcp", "cloudkms", "kms"):
        from .cloudkms import CloudKMSBackend

        return CloudKMSBackend()

    if mode in ("memory", "inproc", "in-process"):
        if not _env_bool(ENV_ALLOW_EPHEMERAL_BACKEND):
            raise ConfigError(
                f"{mode_env}=memory keeps keys in process memory only; "
                f"set {ENV_ALLOW_EPHEMERAL_BACKEND}=1 to allow it (dev/tests)"
            )
        from .memory_backend import InMemoryKMS

        return InMemoryKMS()

    raise ConfigError(f"Unsupported {mode_env}={mode!r}; expected gcp|memory")

