from datetime import datetime, timedelta, timezone

import pytest

from jvs_service.errors import InvalidStateTransition, ValidationError
from jvs_service.lifecycle import (
    BackendState,
    KeyVersion,
    LifecycleLabel,
    RotationPolicy,
    check_invariants,
    check_label_transition,
    check_state_transition,
    decode_label,
    encode_label,
    key_name_from_version,
    version_name,
)

from conftest import KEY, START


def _version(version_id, label=None, state=BackendState.ENABLED, created=START):
    return KeyVersion(
        name=version_name(KEY, version_id),
        key=KEY,
        create_time=created,
        state=state,
        label=label,
        label_time=created if label else None,
    )


def test_labels_move_forward_only():
    check_label_transition(None, LifecycleLabel.NEW)
    check_label_transition(LifecycleLabel.NEW, LifecycleLabel.PRIMARY)
    check_label_transition(LifecycleLabel.PRIMARY, LifecycleLabel.OLD)
    check_label_transition(LifecycleLabel.OLD, LifecycleLabel.DISABLED)
    # Skipping ahead is still forward.
    check_label_transition(LifecycleLabel.PRIMARY, LifecycleLabel.DISABLED)

    with pytest.raises(InvalidStateTransition):
        check_label_transition(LifecycleLabel.OLD, LifecycleLabel.PRIMARY)
    with pytest.raises(InvalidStateTransition):
        check_label_transition(LifecycleLabel.DISABLED, LifecycleLabel.NEW)


def test_backend_states_move_forward_only():
    check_state_transition(BackendState.PENDING_GENERATION, BackendState.ENABLED)
    check_state_transition(BackendState.ENABLED, BackendState.DISABLED)
    check_state_transition(BackendState.DISABLED, BackendState.SCHEDULED_FOR_DESTRUCTION)

    with pytest.raises(InvalidStateTransition) as ei:
        check_state_transition(BackendState.DISABLED, BackendState.ENABLED)
    assert ei.value.details["current"] == "DISABLED"
    assert ei.value.http_status == 409


def test_with_label_rejects_regression():
    v = _version("1", label=LifecycleLabel.OLD)
    later = START + timedelta(hours=1)
    assert v.with_label(LifecycleLabel.DISABLED, later).label_time == later
    with pytest.raises(InvalidStateTransition):
        v.with_label(LifecycleLabel.PRIMARY, later)


def test_label_codec_round_trip_and_unknown_values():
    at = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    raw = encode_label(LifecycleLabel.PRIMARY, at)
    assert raw == f"primary-{int(at.timestamp())}"
    assert decode_label(raw) == (LifecycleLabel.PRIMARY, at)

    assert decode_label(None) == (None, None)
    assert decode_label("") == (None, None)
    assert decode_label("bogus-123") == (None, None)
    # Missing timestamp keeps the label.
    assert decode_label("old") == (LifecycleLabel.OLD, None)


def test_key_name_from_version():
    name = version_name(KEY, "7")
    assert name == KEY + "/cryptoKeyVersions/7"
    assert key_name_from_version(name) == KEY

    for bad in ("", KEY, KEY + "/cryptoKeyVersions/", "cryptoKeyVersions/1"):
        with pytest.raises(ValidationError):
            key_name_from_version(bad)


def test_time_in_label_falls_back_to_create_time():
    v = _version("1")
    assert v.time_in_label(START + timedelta(hours=3)) == timedelta(hours=3)
    labeled = v.with_label(LifecycleLabel.NEW, START + timedelta(hours=1))
    assert labeled.time_in_label(START + timedelta(hours=3)) == timedelta(hours=2)


def test_rotation_policy_requires_positive_durations():
    with pytest.raises(ValidationError):
        RotationPolicy(timedelta(0), timedelta(hours=1), timedelta(days=1))
    with pytest.raises(ValidationError):
        RotationPolicy(timedelta(days=1), timedelta(seconds=-1), timedelta(days=1))


def test_check_invariants_flags_multiple_and_disabled_primaries():
    ok = [_version("1", LifecycleLabel.PRIMARY), _version("2", LifecycleLabel.OLD)]
    assert check_invariants(ok) == []

    two = [_version("1", LifecycleLabel.PRIMARY), _version("2", LifecycleLabel.PRIMARY)]
    assert any("2 versions labeled primary" in p for p in check_invariants(two))

    disabled = [_version("1", LifecycleLabel.PRIMARY, state=BackendState.DISABLED)]
    assert check_invariants(disabled) == [f"primary {version_name(KEY, '1')} is DISABLED"]
