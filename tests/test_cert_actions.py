import json

import pytest

from jvs_service.audit_log import AuditLog
from jvs_service.cert_actions import (
    CertificateAction,
    CertificateActionKind,
    CertificateActionService,
)
from jvs_service.errors import (
    JVS_E_WOULD_ORPHAN_KEY,
    InvalidStateTransition,
    WouldOrphanKey,
)
from jvs_service.lifecycle import BackendState, LifecycleLabel, version_name

from conftest import KEY


def _v(n):
    return version_name(KEY, str(n))


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit" / "actions.jsonl"


@pytest.fixture
def actions(bootstrapped, audit_path):
    return CertificateActionService(bootstrapped, AuditLog(str(audit_path)))


@pytest.fixture
def rotated(bootstrapped):
    """v2 PRIMARY, v1 OLD and still ENABLED."""
    bootstrapped.promote_replacement(KEY)
    return bootstrapped


def _audit_events(path):
    return [json.loads(line)["event"] for line in path.read_text(encoding="utf-8").splitlines()]


def _state(kms, n):
    v = kms.get_version(_v(n))
    return v.state, v.label


def test_disabling_last_enabled_version_is_refused(actions, kms, audit_path):
    with pytest.raises(WouldOrphanKey) as ei:
        actions.force_disable(_v(1), actor="alice", reason="suspected leak")
    assert ei.value.code == JVS_E_WOULD_ORPHAN_KEY
    assert ei.value.http_status == 409

    assert _state(kms, 1) == (BackendState.ENABLED, LifecycleLabel.PRIMARY)
    [event] = _audit_events(audit_path)
    assert event["outcome"] == "rejected"
    assert event["error"] == JVS_E_WOULD_ORPHAN_KEY
    assert event["actor"] == "alice"
    assert event["reason"] == "suspected leak"


def test_force_disable_old_version(rotated, actions, kms):
    result = actions.force_disable(_v(1), actor="alice", reason="cleanup")

    assert result.state == "DISABLED"
    assert result.label == "disabled"
    assert result.promoted is None
    assert _state(kms, 1) == (BackendState.DISABLED, LifecycleLabel.DISABLED)
    assert rotated.get_primary(KEY).name == _v(2)


def test_force_disable_primary_promotes_a_replacement_first(rotated, actions, kms):
    result = actions.force_disable(_v(2), actor="alice", reason="compromised")

    assert result.promoted == _v(3)
    assert rotated.get_primary(KEY).name == _v(3)
    assert _state(kms, 2) == (BackendState.DISABLED, LifecycleLabel.DISABLED)
    # The older OLD version is untouched.
    assert _state(kms, 1) == (BackendState.ENABLED, LifecycleLabel.OLD)


def test_force_disable_rejects_disabled_and_unknown_versions(rotated, actions):
    actions.force_disable(_v(1), actor="alice")
    with pytest.raises(InvalidStateTransition):
        actions.force_disable(_v(1), actor="alice")
    with pytest.raises(InvalidStateTransition):
        actions.force_disable(_v(99), actor="alice")


def test_force_destroy_requires_disabled(rotated, actions, kms):
    with pytest.raises(InvalidStateTransition) as ei:
        actions.force_destroy(_v(1), actor="alice", reason="too early")
    assert ei.value.details["state"] == "ENABLED"

    actions.force_disable(_v(1), actor="alice")
    result = actions.force_destroy(_v(1), actor="alice", reason="retire")
    assert result.state == "SCHEDULED_FOR_DESTRUCTION"
    assert kms.get_version(_v(1)).state == BackendState.SCHEDULED_FOR_DESTRUCTION


def test_rotate_action_on_primary(actions, bootstrapped, kms):
    result = actions.rotate(_v(1), actor="bob", reason="scheduled drill")

    assert result.promoted == _v(2)
    assert result.label == "old"
    assert result.state == "ENABLED"
    assert bootstrapped.get_primary(KEY).name == _v(2)


def test_rotate_action_on_non_primary_is_a_no_op(rotated, actions, kms):
    before = len([c for c in kms.calls if c[0] == "create_version"])
    result = actions.rotate(_v(1), actor="bob")
    assert result.promoted is None
    assert len([c for c in kms.calls if c[0] == "create_version"]) == before


def test_apply_stops_at_first_failure(actions, kms, audit_path):
    batch = [
        CertificateAction(_v(1), CertificateActionKind.FORCE_DISABLE, "first"),
        CertificateAction(_v(1), CertificateActionKind.ROTATE, "never runs"),
    ]
    creates = len([c for c in kms.calls if c[0] == "create_version"])

    with pytest.raises(WouldOrphanKey):
        actions.apply(batch, actor="carol")

    assert len([c for c in kms.calls if c[0] == "create_version"]) == creates
    assert [e["action"] for e in _audit_events(audit_path)] == ["FORCE_DISABLE"]


def test_apply_returns_results_in_order(rotated, actions, audit_path):
    results = actions.apply(
        [
            CertificateAction(_v(1), CertificateActionKind.FORCE_DISABLE, "retire"),
            CertificateAction(_v(1), CertificateActionKind.FORCE_DESTROY, "retire"),
        ],
        actor="carol",
    )
    assert [r.action for r in results] == [CertificateActionKind.FORCE_DISABLE, CertificateActionKind.FORCE_DESTROY]
    assert results[1].as_dict()["state"] == "SCHEDULED_FOR_DESTRUCTION"

    ok, reason, count = AuditLog.verify_file(str(audit_path))
    assert (ok, reason, count) == (True, "OK", 2)
    assert all(e["outcome"] == "applied" for e in _audit_events(audit_path))
