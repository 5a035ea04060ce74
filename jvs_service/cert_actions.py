"""Manual key version actions for incident response.

These bypass the rotation timers but never the lifecycle invariants:

- ROTATE: promote a replacement over the PRIMARY now; the old version then
  ages out through the normal timers.
- FORCE_DISABLE: disable a version immediately. Refused with
  ``WouldOrphanKey`` when it is the last ENABLED version of its key. If it is
  the PRIMARY, a replacement is promoted first so signing never stops.
- FORCE_DESTROY: destroy a version; it must already be DISABLED.

Every attempt, accepted or refused, is audited with actor, time and reason.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import metrics
from .audit_log import AuditLog
from .backend import Deadline
from .errors import InvalidStateTransition, JVSError, WouldOrphanKey
from .lifecycle import BackendState, KeyVersion, LifecycleLabel, key_name_from_version
from .rotation import RotationEngine

logger = logging.getLogger("jvs_service.cert_actions")


class CertificateActionKind(str, enum.Enum):
    ROTATE = "ROTATE"
    FORCE_DISABLE = "FORCE_DISABLE"
    FORCE_DESTROY = "FORCE_DESTROY"


@dataclass(frozen=True)
class CertificateAction:
    version: str
    action: CertificateActionKind
    reason: str = ""


@dataclass(frozen=True)
class CertificateActionResult:
    version: str
    action: CertificateActionKind
    state: str
    label: Optional[str]
    promoted: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "action": self.action.value,
            "state": self.state,
            "label": self.label,
            "promoted": self.promoted,
        }


class CertificateActionService:
    def __init__(self, engine: RotationEngine, audit: Optional[AuditLog] = None):
        self.engine = engine
        self.backend = engine.backend
        self.audit = audit or AuditLog()

    def _result(self, action: CertificateActionKind, v: KeyVersion, promoted: Optional[str] = None) -> CertificateActionResult:
        return CertificateActionResult(
            version=v.name,
            action=action,
            state=v.state.value,
            label=v.label.value if v.label else None,
            promoted=promoted,
        )

    def _audited(
        self,
        action: CertificateActionKind,
        version: str,
        actor: str,
        reason: str,
        fn: Callable[[], CertificateActionResult],
    ) -> CertificateActionResult:
        event: Dict[str, Any] = {
            "type": "certificate_action",
            "action": action.value,
            "version": version,
            "actor": actor or "unknown",
            "reason": reason,
        }
        try:
            result = fn()
        except JVSError as e:
            event.update({"outcome": "rejected", "error": e.code, "message": e.message})
            self.audit.append_event(event)
            metrics.record_cert_action(action.value, "rejected")
            raise
        event.update({"outcome": "applied", "state": result.state, "promoted": result.promoted})
        self.audit.append_event(event)
        metrics.record_cert_action(action.value, "applied")
        return result

    def rotate(self, version: str, *, actor: str, reason: str = "", deadline: Optional[Deadline] = None) -> CertificateActionResult:
        return self._audited(
            CertificateActionKind.ROTATE, version, actor, reason, lambda: self._rotate(version, deadline)
        )

    def force_disable(self, version: str, *, actor: str, reason: str = "", deadline: Optional[Deadline] = None) -> CertificateActionResult:
        return self._audited(
            CertificateActionKind.FORCE_DISABLE, version, actor, reason, lambda: self._force_disable(version, deadline)
        )

    def force_destroy(self, version: str, *, actor: str, reason: str = "", deadline: Optional[Deadline] = None) -> CertificateActionResult:
        return self._audited(
            CertificateActionKind.FORCE_DESTROY, version, actor, reason, lambda: self._force_destroy(version, deadline)
        )

    def apply(
        self,
        actions: Iterable[CertificateAction],
        *,
        actor: str,
        deadline: Optional[Deadline] = None,
    ) -> List[CertificateActionResult]:
        """Apply actions in order; the first failure stops the batch and is raised."""
        handlers = {
            CertificateActionKind.ROTATE: self.rotate,
            CertificateActionKind.FORCE_DISABLE: self.force_disable,
            CertificateActionKind.FORCE_DESTROY: self.force_destroy,
        }
        results: List[CertificateActionResult] = []
        for a in actions:
            results.append(handlers[CertificateActionKind(a.action)](a.version, actor=actor, reason=a.reason, deadline=deadline))
        return results

    # ---------------------------
    # Actions
    # ---------------------------

    def _rotate(self, name: str, deadline: Optional[Deadline]) -> CertificateActionResult:
        d = self.engine.make_deadline(deadline)
        target = self.backend.get_version(name, timeout=d.remaining())
        promoted = None
        if target.is_primary:
            promoted = self.engine.promote_replacement(target.key, deadline=d).primary
            target = self.backend.get_version(name, timeout=d.remaining())
        else:
            logger.info("rotate %s: not the primary, nothing to do", name)
        return self._result(CertificateActionKind.ROTATE, target, promoted)

    def _force_disable(self, name: str, deadline: Optional[Deadline]) -> CertificateActionResult:
        d = self.engine.make_deadline(deadline)
        key = key_name_from_version(name)
        versions = self.backend.list_versions(key, timeout=d.remaining())
        target = next((v for v in versions if v.name == name), None)
        if target is None:
            raise InvalidStateTransition(f"{name} does not exist or is destroyed", version=name)
        if target.state == BackendState.DISABLED:
            raise InvalidStateTransition(f"{name} is already disabled", version=name, state=target.state.value)
        if target.state != BackendState.ENABLED:
            raise InvalidStateTransition(
                f"{name} is {target.state.value} and cannot be disabled", version=name, state=target.state.value
            )
        others = [v for v in versions if v.is_enabled and v.name != name]
        if not others:
            raise WouldOrphanKey(f"{name} is the only enabled version of {key}", version=name, key=key)

        promoted = None
        if target.is_primary:
            promoted = self.engine.promote_replacement(key, deadline=d).primary

        disabled = self.backend.disable_version(name, timeout=d.remaining())
        now = self.engine.clock()
        self.backend.update_labels(key, {name: (LifecycleLabel.DISABLED, now)}, timeout=d.remaining())
        return self._result(
            CertificateActionKind.FORCE_DISABLE, disabled.with_label(LifecycleLabel.DISABLED, now), promoted
        )

    def _force_destroy(self, name: str, deadline: Optional[Deadline]) -> CertificateActionResult:
        d = self.engine.make_deadline(deadline)
        target = self.backend.get_version(name, timeout=d.remaining())
        if target.state != BackendState.DISABLED:
            raise InvalidStateTransition(
                f"{name} must be disabled before it is destroyed", version=name, state=target.state.value
            )
        destroyed = self.backend.destroy_version(name, timeout=d.remaining())
        return self._result(CertificateActionKind.FORCE_DESTROY, destroyed)
