"""In-process key management backend (dev/testing).

Holds real EC private keys in memory and behaves like the remote service:
signatures come back DER encoded, lifecycle labels are stored as raw strings
on the parent key, new versions can sit in PENDING_GENERATION for a while,
and scheduled destruction completes after a delay.

Tests drive it through ``clock`` and one-shot call hooks (``fail_next``,
``before``) instead of patching internals.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from .backend import LabelChanges, PublicKeyInfo
from .crypto import _now_utc, curve_for_algorithm
from .errors import JVS_E_DEADLINE_EXCEEDED, RemoteServiceError, ValidationError
from .lifecycle import (
    BackendState,
    KeyVersion,
    LifecycleLabel,
    check_label_transition,
    check_state_transition,
    decode_label,
    encode_label,
    key_name_from_version,
    version_name,
)


@dataclass
class _StoredVersion:
    name: str
    key: str
    create_time: datetime
    algorithm: str
    private_key: ec.EllipticCurvePrivateKey
    state: BackendState
    ready_at: datetime
    destroy_at: Optional[datetime] = None


@dataclass
class _StoredKey:
    name: str
    algorithm: str
    labels: Dict[str, str] = field(default_factory=dict)
    next_id: int = 1


class InMemoryKMS:
    """Thread-safe in-memory implementation of ``SigningBackend``."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _now_utc,
        generation_delay: timedelta = timedelta(0),
        destroy_scheduled_duration: timedelta = timedelta(hours=24),
        default_algorithm: str = "EC_SIGN_P256_SHA256",
    ):
        self.clock = clock
        self.generation_delay = generation_delay
        self.destroy_scheduled_duration = destroy_scheduled_duration
        self.default_algorithm = default_algorithm
        self.calls: List[Tuple[str, str]] = []
        self._keys: Dict[str, _StoredKey] = {}
        self._versions: Dict[str, _StoredVersion] = {}
        self._hooks: Dict[str, List[Callable[[], None]]] = {}
        self._lock = threading.RLock()

    # ---------------------------
    # Test controls
    # ---------------------------

    def create_key(self, key: str, algorithm: Optional[str] = None) -> None:
        algorithm = algorithm or self.default_algorithm
        curve_for_algorithm(algorithm)
        with self._lock:
            self._keys.setdefault(key, _StoredKey(name=key, algorithm=algorithm))

    def before(self, op: str, fn: Callable[[], None]) -> None:
        """Run ``fn`` once, right before the next call to ``op``."""
        with self._lock:
            self._hooks.setdefault(op, []).append(fn)

    def fail_next(self, op: str, exc: Optional[Exception] = None, *, times: int = 1) -> None:
        """Make the next ``times`` calls to ``op`` raise ``exc``."""
        err = exc or RemoteServiceError(f"injected failure in {op}", op=op)

        def _raise() -> None:
            raise err

        for _ in range(times):
            self.before(op, _raise)

    def raw_labels(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._require_key(key).labels)

    def force_state(self, name: str, state: BackendState) -> None:
        """Set a version's state without transition checks (out-of-band changes)."""
        with self._lock:
            self._require_version(name).state = state

    # ---------------------------
    # Internals
    # ---------------------------

    def _enter(self, op: str, target: str, timeout: Optional[float]) -> None:
        if timeout is not None and timeout <= 0:
            raise RemoteServiceError(f"{op} timed out", code=JVS_E_DEADLINE_EXCEEDED, op=op)
        with self._lock:
            self.calls.append((op, target))
            hooks = self._hooks.get(op) or []
            hook = hooks.pop(0) if hooks else None
        if hook is not None:
            hook()

    def _require_key(self, key: str) -> _StoredKey:
        k = self._keys.get(key)
        if k is None:
            raise RemoteServiceError(f"key {key} not found", retryable=False, key=key)
        return k

    def _require_version(self, name: str) -> _StoredVersion:
        v = self._versions.get(name)
        if v is None or self._settle(v).state == BackendState.DESTROYED:
            raise RemoteServiceError(f"key version {name} not found", retryable=False, version=name)
        return v

    def _settle(self, v: _StoredVersion) -> _StoredVersion:
        now = self.clock()
        if v.state == BackendState.PENDING_GENERATION and now >= v.ready_at:
            v.state = BackendState.ENABLED
        if v.state == BackendState.SCHEDULED_FOR_DESTRUCTION and v.destroy_at is not None and now >= v.destroy_at:
            v.state = BackendState.DESTROYED
        return v

    def _snapshot(self, v: _StoredVersion) -> KeyVersion:
        self._settle(v)
        label, label_time = decode_label(self._keys[v.key].labels.get(v.name.rsplit("/", 1)[-1]))
        return KeyVersion(
            name=v.name,
            key=v.key,
            create_time=v.create_time,
            state=v.state,
            label=label,
            label_time=label_time,
            algorithm=v.algorithm,
        )

    def _require_enabled(self, v: _StoredVersion, op: str) -> None:
        if self._settle(v).state != BackendState.ENABLED:
            raise RemoteServiceError(
                f"{op} requires an enabled version; {v.name} is {v.state.value}",
                retryable=v.state == BackendState.PENDING_GENERATION,
                version=v.name,
                state=v.state.value,
            )

    # ---------------------------
    # SigningBackend
    # ---------------------------

    def list_versions(self, key: str, *, timeout: Optional[float] = None) -> List[KeyVersion]:
        self._enter("list_versions", key, timeout)
        with self._lock:
            if key not in self._keys:
                return []
            out = [self._snapshot(v) for v in self._versions.values() if v.key == key]
            return [v for v in out if v.state != BackendState.DESTROYED]

    def get_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        self._enter("get_version", name, timeout)
        with self._lock:
            return self._snapshot(self._require_version(name))

    def create_version(self, key: str, *, timeout: Optional[float] = None) -> KeyVersion:
        self._enter("create_version", key, timeout)
        with self._lock:
            if key not in self._keys:
                self.create_key(key)
            k = self._keys[key]
            spec = curve_for_algorithm(k.algorithm)
            now = self.clock()
            version_id = str(k.next_id)
            k.next_id += 1
            v = _StoredVersion(
                name=version_name(key, version_id),
                key=key,
                create_time=now,
                algorithm=k.algorithm,
                private_key=ec.generate_private_key(spec.curve()),
                state=BackendState.PENDING_GENERATION,
                ready_at=now + self.generation_delay,
            )
            self._versions[v.name] = v
            k.labels[version_id] = encode_label(LifecycleLabel.NEW, now)
            return self._snapshot(v)

    def update_labels(self, key: str, changes: LabelChanges, *, timeout: Optional[float] = None) -> None:
        self._enter("update_labels", key, timeout)
        with self._lock:
            k = self._require_key(key)
            staged: Dict[str, str] = {}
            for name, (label, at) in changes.items():
                if key_name_from_version(name) != key:
                    raise ValidationError(f"{name} does not belong to {key}", version=name, key=key)
                self._require_version(name)
                version_id = name.rsplit("/", 1)[-1]
                current, _ = decode_label(k.labels.get(version_id))
                check_label_transition(current, label)
                staged[version_id] = encode_label(label, at)
            k.labels.update(staged)

    def disable_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        self._enter("disable_version", name, timeout)
        with self._lock:
            v = self._require_version(name)
            if v.state != BackendState.DISABLED:
                check_state_transition(v.state, BackendState.DISABLED)
                v.state = BackendState.DISABLED
            return self._snapshot(v)

    def destroy_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        self._enter("destroy_version", name, timeout)
        with self._lock:
            v = self._require_version(name)
            if v.state not in (BackendState.ENABLED, BackendState.DISABLED):
                raise RemoteServiceError(
                    f"cannot destroy {name} in state {v.state.value}",
                    retryable=False,
                    version=name,
                    state=v.state.value,
                )
            v.state = BackendState.SCHEDULED_FOR_DESTRUCTION
            v.destroy_at = self.clock() + self.destroy_scheduled_duration
            return self._snapshot(v)

    def get_public_key(self, name: str, *, timeout: Optional[float] = None) -> PublicKeyInfo:
        self._enter("get_public_key", name, timeout)
        with self._lock:
            v = self._require_version(name)
            self._require_enabled(v, "get_public_key")
            pem = v.private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            return PublicKeyInfo(pem=pem.decode("ascii"), algorithm=v.algorithm)

    def asymmetric_sign(self, name: str, digest: bytes, *, timeout: Optional[float] = None) -> bytes:
        self._enter("asymmetric_sign", name, timeout)
        with self._lock:
            v = self._require_version(name)
            self._require_enabled(v, "asymmetric_sign")
            spec = curve_for_algorithm(v.algorithm)
            hash_alg = spec.hash_cls()
            if len(digest) != hash_alg.digest_size:
                raise RemoteServiceError(
                    f"digest must be {hash_alg.digest_size} bytes for {v.algorithm}",
                    retryable=False,
                    length=len(digest),
                )
            return v.private_key.sign(bytes(digest), ec.ECDSA(Prehashed(hash_alg)))

    def list_keys(self, key_ring: str, *, timeout: Optional[float] = None) -> List[str]:
        self._enter("list_keys", key_ring, timeout)
        prefix = key_ring.rstrip("/") + "/cryptoKeys/"
        with self._lock:
            return sorted(k for k in self._keys if k.startswith(prefix) and "/" not in k[len(prefix):])
