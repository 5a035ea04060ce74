"""Key version rotation engine.

``RotationEngine.rotate`` advances one managed key through its lifecycle:

1. Primary: if there is no PRIMARY, or it is older than ``rotation_age``,
   create (or resume) a NEW version, check its public key, then promote it
   and demote the prior PRIMARY to OLD in one atomic label write.
2. Disable: OLD versions that have been OLD for ``propagation_delay`` are
   disabled in the backend and relabeled DISABLED.
3. Destroy: versions disabled in the backend for ``destroy_after`` (timed
   from their last label change, or creation if unlabeled) are scheduled for
   destruction.

Steps are idempotent and independent. A failing step does not stop the
others; ``rotate`` raises ``KeyRotationError`` at the end if anything failed.
A call interrupted between creating and promoting a version leaves a NEW
version behind, which the next call picks up instead of creating another.
A version whose NEW label write never landed is treated the same way, and
leftovers older than the current PRIMARY are demoted to OLD so they age out.

Concurrent rotation of the *same* key is detected, not locked out: the
version set is re-read right before promotion and the promotion is aborted
with ``ConcurrentModification`` if the PRIMARY changed in the meantime.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from . import metrics
from .backend import DEFAULT_CALL_TIMEOUT_SECONDS, Deadline, SigningBackend
from .crypto import _now_utc, check_key_matches_curve, curve_for_algorithm, load_public_key_pem
from .errors import (
    AggregateRotationError,
    ConcurrentModification,
    ConfigError,
    JVS_E_DEADLINE_EXCEEDED,
    JVSError,
    KeyRotationError,
    KeyUnavailable,
    NoPrimaryKey,
)
from .lifecycle import (
    BackendState,
    KeyVersion,
    LifecycleLabel,
    RotationAction,
    RotationPolicy,
    primaries,
)

logger = logging.getLogger("jvs_service.rotation")


@dataclass
class RotationOutcome:
    """What one ``rotate`` call did to one key."""

    key: str
    actions: List[Tuple[RotationAction, str]] = field(default_factory=list)
    primary: Optional[str] = None
    pending: Optional[str] = None

    def record(self, action: RotationAction, version: str) -> None:
        self.actions.append((action, version))
        metrics.record_rotation_action(action.value)
        logger.info("rotation %s %s", action.value, version)

    def names(self, action: RotationAction) -> List[str]:
        return [v for a, v in self.actions if a == action]

    def as_dict(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "primary": self.primary,
            "pending": self.pending,
            "actions": [{"action": a.value, "version": v} for a, v in self.actions],
        }


@dataclass
class RotationReport:
    """Per-key results of a rotation batch."""

    outcomes: Dict[str, RotationOutcome] = field(default_factory=dict)
    failures: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise AggregateRotationError(self.failures)

    def as_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok,
            "outcomes": {k: o.as_dict() for k, o in sorted(self.outcomes.items())},
            "failures": {k: str(e) for k, e in sorted(self.failures.items())},
        }


def _newest(versions: Iterable[KeyVersion]) -> Optional[KeyVersion]:
    vs = sorted(versions, key=lambda v: (v.create_time, v.name), reverse=True)
    return vs[0] if vs else None


def _is_candidate(v: KeyVersion) -> bool:
    """Created but never promoted: labeled NEW, or with no label at all."""
    return v.label in (None, LifecycleLabel.NEW) and v.state in (BackendState.ENABLED, BackendState.PENDING_GENERATION)


class RotationEngine:
    """Drives ``RotationPolicy`` timers against a ``SigningBackend``."""

    def __init__(
        self,
        backend: SigningBackend,
        *,
        default_policy: Optional[RotationPolicy] = None,
        policies: Optional[Mapping[str, RotationPolicy]] = None,
        clock: Callable[[], datetime] = _now_utc,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_workers: int = 8,
    ):
        self.backend = backend
        self.default_policy = default_policy
        self.policies = dict(policies or {})
        self.clock = clock
        self.call_timeout = float(call_timeout)
        self.max_workers = max(1, int(max_workers))

    def policy_for(self, key: str) -> RotationPolicy:
        policy = self.policies.get(key, self.default_policy)
        if policy is None:
            raise ConfigError(f"no rotation policy configured for {key}", key=key)
        return policy

    def make_deadline(self, deadline: Optional[Deadline]) -> Deadline:
        return deadline or Deadline(None, default_call_timeout=self.call_timeout)

    # ---------------------------
    # Read paths
    # ---------------------------

    def get_primary(self, key: str, *, deadline: Optional[Deadline] = None) -> KeyVersion:
        """Return the live signer of ``key``; raises ``NoPrimaryKey`` if there is none."""
        d = self.make_deadline(deadline)
        found = primaries(self.backend.list_versions(key, timeout=d.remaining()))
        if not found:
            raise NoPrimaryKey(f"no enabled primary version for {key}", key=key)
        if len(found) > 1:
            logger.warning("%s has %d primary versions; using newest %s", key, len(found), found[0].name)
        return found[0]

    def enabled_versions(self, key: str, *, deadline: Optional[Deadline] = None) -> List[KeyVersion]:
        """ENABLED versions of ``key``, newest first."""
        d = self.make_deadline(deadline)
        versions = [v for v in self.backend.list_versions(key, timeout=d.remaining()) if v.is_enabled]
        return sorted(versions, key=lambda v: (v.create_time, v.name), reverse=True)

    # ---------------------------
    # Rotation
    # ---------------------------

    def rotate(
        self,
        key: str,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> RotationOutcome:
        now = now or self.clock()
        d = self.make_deadline(deadline)
        policy = self.policy_for(key)
        outcome = RotationOutcome(key=key)
        failures: List[JVSError] = []

        try:
            versions = self.backend.list_versions(key, timeout=d.remaining())
        except JVSError as e:
            raise KeyRotationError(key, [e], outcome) from e

        steps = (self._primary_step, self._disable_step, self._destroy_step)
        for step in steps:
            try:
                step(key, versions, policy, now, d, outcome, failures)
            except JVSError as e:
                logger.warning("rotation of %s: %s failed: %s", key, step.__name__.strip("_"), e)
                failures.append(e)
            if d.expired():
                break

        if failures:
            metrics.record_rotation_failure()
            err = KeyRotationError(key, failures, outcome)
            raise err from failures[0]
        return outcome

    def rotate_all(
        self,
        keys: Iterable[str],
        *,
        key_rings: Iterable[str] = (),
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> RotationReport:
        """Rotate many keys; one key's failure never stops the others.

        Key rings are expanded to their keys first. Duplicate keys are
        rotated once. Different keys run concurrently.
        """
        report = RotationReport()
        d = self.make_deadline(deadline)
        unique = list(dict.fromkeys(keys))
        for ring in dict.fromkeys(key_rings):
            try:
                for k in self.backend.list_keys(ring, timeout=d.remaining()):
                    if k not in unique:
                        unique.append(k)
            except JVSError as e:
                logger.warning("listing keys of %s failed: %s", ring, e)
                report.failures[ring] = e

        if not unique:
            return report

        workers = min(self.max_workers, len(unique))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jvs-rotate") as pool:
            futures = {pool.submit(self.rotate, k, now=now, deadline=d): k for k in unique}
            for fut in as_completed(futures):
                k = futures[fut]
                try:
                    report.outcomes[k] = fut.result()
                except KeyRotationError as e:
                    report.failures[k] = e
                    if e.outcome is not None:
                        report.outcomes[k] = e.outcome
                except Exception as e:
                    logger.exception("rotation of %s failed unexpectedly", k)
                    report.failures[k] = e
        return report

    def promote_replacement(
        self,
        key: str,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> RotationOutcome:
        """Promote a fresh version over the current PRIMARY regardless of its age.

        Raises ``KeyUnavailable`` if the replacement is still being generated.
        """
        now = now or self.clock()
        d = self.make_deadline(deadline)
        outcome = RotationOutcome(key=key)
        versions = self.backend.list_versions(key, timeout=d.remaining())
        current = primaries(versions)
        self._promote(key, versions, current[0] if current else None, now, d, outcome)
        if outcome.pending is not None:
            raise KeyUnavailable(
                f"replacement version {outcome.pending} of {key} is not ready yet; retry later",
                key=key,
                version=outcome.pending,
            )
        return outcome

    # ---------------------------
    # Steps
    # ---------------------------

    def _primary_step(self, key, versions, policy, now, d, outcome, failures) -> None:
        current = primaries(versions)
        primary = current[0] if current else None
        stale = [v for v in versions if v.label == LifecycleLabel.PRIMARY and v not in current[:1]]
        # More than one PRIMARY, or a PRIMARY disabled out of band.
        changes = {v.name: (LifecycleLabel.OLD if v.is_enabled else LifecycleLabel.DISABLED, now) for v in stale}
        if primary is not None:
            # Candidates that lost to a newer PRIMARY will never be promoted.
            for v in versions:
                if _is_candidate(v) and v.create_time < primary.create_time:
                    changes[v.name] = (LifecycleLabel.OLD, now)
        if changes:
            logger.warning("%s: demoting stray versions %s", key, sorted(changes))
            self.backend.update_labels(key, changes, timeout=d.remaining())
            for name in sorted(changes):
                outcome.record(RotationAction.DEMOTE, name)

        if primary is not None and primary.age(now) < policy.rotation_age:
            outcome.primary = primary.name
            return
        self._promote(key, versions, primary, now, d, outcome)

    def _promote(self, key, versions, primary, now, d, outcome) -> None:
        leftovers = [v for v in versions if _is_candidate(v)]
        candidate = _newest(leftovers)
        if candidate is None:
            candidate = self.backend.create_version(key, timeout=d.remaining())
            outcome.record(RotationAction.CREATE, candidate.name)
        if candidate.state == BackendState.PENDING_GENERATION:
            candidate = self.backend.get_version(candidate.name, timeout=d.remaining())
        if candidate.state != BackendState.ENABLED:
            logger.info("%s: %s is %s; promotion deferred", key, candidate.name, candidate.state.value)
            outcome.pending = candidate.name
            outcome.primary = primary.name if primary is not None else None
            return

        info = self.backend.get_public_key(candidate.name, timeout=d.remaining())
        check_key_matches_curve(load_public_key_pem(info.pem), curve_for_algorithm(info.algorithm))

        fresh = primaries(self.backend.list_versions(key, timeout=d.remaining()))
        seen = fresh[0].name if fresh else None
        expected = primary.name if primary is not None else None
        if seen != expected:
            raise ConcurrentModification(
                f"primary of {key} changed during rotation",
                key=key,
                expected=expected,
                found=seen,
            )

        changes = {candidate.name: (LifecycleLabel.PRIMARY, now)}
        if primary is not None:
            changes[primary.name] = (LifecycleLabel.OLD, now)
        for v in leftovers:
            if v.name != candidate.name:
                changes[v.name] = (LifecycleLabel.OLD, now)
        self.backend.update_labels(key, changes, timeout=d.remaining())
        outcome.record(RotationAction.PROMOTE, candidate.name)
        outcome.primary = candidate.name

    def _disable_step(self, key, versions, policy, now, d, outcome, failures) -> None:
        for v in versions:
            if v.label != LifecycleLabel.OLD or v.time_in_label(now) < policy.propagation_delay:
                continue
            if v.state not in (BackendState.ENABLED, BackendState.DISABLED):
                continue
            try:
                if v.state == BackendState.ENABLED:
                    self.backend.disable_version(v.name, timeout=d.remaining())
                    outcome.record(RotationAction.DISABLE, v.name)
                self.backend.update_labels(key, {v.name: (LifecycleLabel.DISABLED, now)}, timeout=d.remaining())
            except JVSError as e:
                if getattr(e, "code", None) == JVS_E_DEADLINE_EXCEEDED:
                    raise
                logger.warning("rotation of %s: disabling %s failed: %s", key, v.name, e)
                failures.append(e)

    def _destroy_step(self, key, versions, policy, now, d, outcome, failures) -> None:
        for v in versions:
            if v.state != BackendState.DISABLED:
                continue
            if v.time_in_label(now) < policy.destroy_after:
                continue
            try:
                self.backend.destroy_version(v.name, timeout=d.remaining())
                outcome.record(RotationAction.DESTROY, v.name)
            except JVSError as e:
                if getattr(e, "code", None) == JVS_E_DEADLINE_EXCEEDED:
                    raise
                logger.warning("rotation of %s: destroying %s failed: %s", key, v.name, e)
                failures.append(e)
