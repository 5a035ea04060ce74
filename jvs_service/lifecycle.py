"""Key version lifecycle model.

Two independent, forward-only axes describe a key version:

- ``LifecycleLabel``: the service's own view (NEW -> PRIMARY -> OLD -> DISABLED),
  stored as string metadata by the backend.
- ``BackendState``: the key management service's view
  (PENDING_GENERATION -> ENABLED -> DISABLED -> SCHEDULED_FOR_DESTRUCTION -> DESTROYED).

Raw label strings only exist at the backend boundary; everything above it works
with the enums defined here.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import InvalidStateTransition, ValidationError


class LifecycleLabel(str, enum.Enum):
    NEW = "new"
    PRIMARY = "primary"
    OLD = "old"
    DISABLED = "disabled"


class BackendState(str, enum.Enum):
    PENDING_GENERATION = "PENDING_GENERATION"
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    SCHEDULED_FOR_DESTRUCTION = "SCHEDULED_FOR_DESTRUCTION"
    DESTROYED = "DESTROYED"


class RotationAction(str, enum.Enum):
    NONE = "none"
    CREATE = "create"
    PROMOTE = "promote"
    DEMOTE = "demote"
    DISABLE = "disable"
    DESTROY = "destroy"


_LABEL_ORDER = {
    LifecycleLabel.NEW: 0,
    LifecycleLabel.PRIMARY: 1,
    LifecycleLabel.OLD: 2,
    LifecycleLabel.DISABLED: 3,
}

_STATE_ORDER = {
    BackendState.PENDING_GENERATION: 0,
    BackendState.ENABLED: 1,
    BackendState.DISABLED: 2,
    BackendState.SCHEDULED_FOR_DESTRUCTION: 3,
    BackendState.DESTROYED: 4,
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RotationPolicy:
    """Timers that drive rotation of one managed key.

    rotation_age: PRIMARY age at which a replacement is created and promoted.
    propagation_delay: time an OLD version stays ENABLED after demotion, so
        tokens signed just before the switch remain verifiable.
    destroy_after: time a DISABLED version waits before destruction.
    """

    rotation_age: timedelta
    propagation_delay: timedelta
    destroy_after: timedelta

    def __post_init__(self) -> None:
        for name in ("rotation_age", "propagation_delay", "destroy_after"):
            value = getattr(self, name)
            if not isinstance(value, timedelta) or value <= timedelta(0):
                raise ValidationError(f"{name} must be a positive duration", field=name)


@dataclass(frozen=True)
class KeyVersion:
    """Snapshot of one version of a managed key, as read from the backend."""

    name: str
    key: str
    create_time: datetime
    state: BackendState
    label: Optional[LifecycleLabel] = None
    label_time: Optional[datetime] = None
    algorithm: str = "EC_SIGN_P256_SHA256"

    @property
    def version_id(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    @property
    def is_enabled(self) -> bool:
        return self.state == BackendState.ENABLED

    @property
    def is_primary(self) -> bool:
        return self.label == LifecycleLabel.PRIMARY and self.is_enabled

    def age(self, now: datetime) -> timedelta:
        return now - self.create_time

    def time_in_label(self, now: datetime) -> timedelta:
        """Time since the label last changed (creation time for unlabeled versions)."""
        return now - (self.label_time or self.create_time)

    def with_label(self, label: LifecycleLabel, at: datetime) -> "KeyVersion":
        check_label_transition(self.label, label)
        return replace(self, label=label, label_time=at)

    def with_state(self, state: BackendState) -> "KeyVersion":
        check_state_transition(self.state, state)
        return replace(self, state=state)


def check_label_transition(current: Optional[LifecycleLabel], new: LifecycleLabel) -> None:
    """Raise ``InvalidStateTransition`` unless ``current -> new`` moves forward."""
    if current is None:
        return
    if _LABEL_ORDER[new] < _LABEL_ORDER[current]:
        raise InvalidStateTransition(
            f"label cannot move from {current.value} to {new.value}",
            current=current.value,
            requested=new.value,
        )


def check_state_transition(current: BackendState, new: BackendState) -> None:
    if _STATE_ORDER[new] < _STATE_ORDER[current]:
        raise InvalidStateTransition(
            f"state cannot move from {current.value} to {new.value}",
            current=current.value,
            requested=new.value,
        )


# ---------------------------
# Backend label codec
# ---------------------------

def encode_label(label: LifecycleLabel, at: datetime) -> str:
    """Encode a label and its change time as ``<label>-<unix seconds>``."""
    return f"{label.value}-{int(at.timestamp())}"


def decode_label(raw: Optional[str]) -> Tuple[Optional[LifecycleLabel], Optional[datetime]]:
    """Inverse of ``encode_label``. Unknown or missing values decode to ``(None, None)``."""
    if not raw:
        return None, None
    value, _, ts = str(raw).partition("-")
    try:
        label = LifecycleLabel(value)
    except ValueError:
        return None, None
    at: Optional[datetime] = None
    if ts.isdigit():
        at = datetime.fromtimestamp(int(ts), tz=timezone.utc)
    return label, at


# ---------------------------
# Resource names
# ---------------------------

_VERSION_SEGMENT = "cryptoKeyVersions"


def version_name(key: str, version_id: str) -> str:
    return f"{key.rstrip('/')}/{_VERSION_SEGMENT}/{version_id}"


def key_name_from_version(name: str) -> str:
    """Return the parent key of a version resource name.

    ``projects/p/locations/l/keyRings/r/cryptoKeys/k/cryptoKeyVersions/1``
    maps to ``projects/p/locations/l/keyRings/r/cryptoKeys/k``.
    """
    parent, sep, version_id = str(name).rpartition(f"/{_VERSION_SEGMENT}/")
    if not sep or not parent or not version_id or "/" in version_id:
        raise ValidationError(f"not a key version name: {name!r}", name=name)
    return parent


def sort_by_create_time(versions: Iterable[KeyVersion]) -> List[KeyVersion]:
    return sorted(versions, key=lambda v: (v.create_time, v.name))


def primaries(versions: Iterable[KeyVersion]) -> List[KeyVersion]:
    """PRIMARY-labeled ENABLED versions, newest first."""
    return sorted((v for v in versions if v.is_primary), key=lambda v: (v.create_time, v.name), reverse=True)


def check_invariants(versions: Iterable[KeyVersion]) -> List[str]:
    """Return human-readable invariant violations for one key's version set."""
    problems: List[str] = []
    vs = list(versions)
    prim = [v for v in vs if v.label == LifecycleLabel.PRIMARY]
    if len(prim) > 1:
        problems.append(f"{len(prim)} versions labeled primary")
    for v in prim:
        if not v.is_enabled:
            problems.append(f"primary {v.name} is {v.state.value}")
    return problems


def labels_by_version(versions: Iterable[KeyVersion]) -> Dict[str, Optional[LifecycleLabel]]:
    return {v.name: v.label for v in versions}
