import time
from datetime import timedelta

import pytest

from jvs_service.backend import Deadline, SigningBackend, build_backend_from_env
from jvs_service.errors import (
    JVS_E_DEADLINE_EXCEEDED,
    ConfigError,
    InvalidStateTransition,
    RemoteServiceError,
    SigningError,
    ValidationError,
)
from jvs_service.lifecycle import BackendState, LifecycleLabel, version_name
from jvs_service.memory_backend import InMemoryKMS

from conftest import KEY, OTHER_KEY, START


class TestBuildFromEnv:
    def test_memory_backend_needs_explicit_opt_in(self, monkeypatch):
        monkeypatch.setenv("JVS_BACKEND", "memory")
        monkeypatch.delenv("JVS_ALLOW_EPHEMERAL_BACKEND", raising=False)
        with pytest.raises(ConfigError):
            build_backend_from_env()

        monkeypatch.setenv("JVS_ALLOW_EPHEMERAL_BACKEND", "1")
        backend = build_backend_from_env()
        assert isinstance(backend, InMemoryKMS)
        assert isinstance(backend, SigningBackend)

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("JVS_BACKEND", "vault")
        with pytest.raises(ConfigError):
            build_backend_from_env()

    def test_cloud_kms_is_the_default(self, monkeypatch):
        pytest.importorskip("google.cloud.kms")
        from jvs_service import cloudkms

        monkeypatch.delenv("JVS_BACKEND", raising=False)
        monkeypatch.setattr(cloudkms.kms, "KeyManagementServiceClient", lambda: object())
        assert isinstance(build_backend_from_env(), cloudkms.CloudKMSBackend)


class TestDeadline:
    def test_unbounded_deadline_uses_call_timeout(self):
        d = Deadline.none()
        assert not d.expired()
        assert d.remaining() == 10.0
        assert Deadline(None, default_call_timeout=2.5).remaining() == 2.5

    def test_remaining_is_capped_by_deadline(self):
        d = Deadline(1.0, default_call_timeout=30.0)
        assert 0.0 < d.remaining() <= 1.0

    def test_cancel(self):
        d = Deadline(60)
        d.cancel()
        assert d.expired()
        with pytest.raises(RemoteServiceError) as ei:
            d.remaining()
        assert ei.value.code == JVS_E_DEADLINE_EXCEEDED
        assert ei.value.message == "operation cancelled"

    def test_expiry(self):
        d = Deadline(0.01)
        time.sleep(0.02)
        with pytest.raises(RemoteServiceError) as ei:
            d.check()
        assert ei.value.message == "deadline exceeded"


class TestInMemoryKMS:
    def test_new_versions_are_labeled_new(self, kms):
        v = kms.create_version(KEY)
        assert v.name == version_name(KEY, "1")
        assert v.label == LifecycleLabel.NEW
        assert v.label_time == START
        assert kms.raw_labels(KEY) == {"1": f"new-{int(START.timestamp())}"}

    def test_label_write_is_all_or_nothing(self, kms, clock):
        a = kms.create_version(KEY)
        b = kms.create_version(KEY)
        kms.update_labels(KEY, {b.name: (LifecycleLabel.OLD, clock())})
        before = kms.raw_labels(KEY)

        with pytest.raises(InvalidStateTransition):
            kms.update_labels(KEY, {a.name: (LifecycleLabel.PRIMARY, clock()), b.name: (LifecycleLabel.NEW, clock())})
        assert kms.raw_labels(KEY) == before

    def test_labels_cannot_cross_keys(self, kms, clock):
        kms.create_key(OTHER_KEY)
        v = kms.create_version(KEY)
        with pytest.raises(ValidationError):
            kms.update_labels(OTHER_KEY, {v.name: (LifecycleLabel.PRIMARY, clock())})

    def test_signing_requires_enabled_version(self, clock):
        kms = InMemoryKMS(clock=clock, generation_delay=timedelta(minutes=1))
        v = kms.create_version(KEY)
        assert v.state == BackendState.PENDING_GENERATION
        with pytest.raises(RemoteServiceError) as ei:
            kms.asymmetric_sign(v.name, b"\x00" * 32)
        assert ei.value.retryable is True

        clock.advance(minutes=1)
        assert kms.get_version(v.name).state == BackendState.ENABLED
        assert kms.asymmetric_sign(v.name, b"\x00" * 32)

    def test_digest_length_must_match_algorithm(self, kms):
        v = kms.create_version(KEY)
        with pytest.raises(RemoteServiceError):
            kms.asymmetric_sign(v.name, b"\x00" * 48)

    def test_disabled_versions_cannot_be_reenabled(self, kms):
        v = kms.create_version(KEY)
        kms.disable_version(v.name)
        assert kms.disable_version(v.name).state == BackendState.DISABLED
        with pytest.raises(RemoteServiceError):
            kms.get_public_key(v.name)

    def test_scheduled_destruction_completes(self, kms, clock):
        v = kms.create_version(KEY)
        kms.disable_version(v.name)
        assert kms.destroy_version(v.name).state == BackendState.SCHEDULED_FOR_DESTRUCTION
        with pytest.raises(RemoteServiceError):
            kms.destroy_version(v.name)

        clock.advance(hours=24)
        assert kms.list_versions(KEY) == []
        with pytest.raises(RemoteServiceError):
            kms.get_version(v.name)

    def test_list_keys_is_scoped_to_the_ring(self, kms):
        kms.create_key(KEY)
        kms.create_key(OTHER_KEY)
        kms.create_key("projects/p/locations/global/keyRings/jvs-2/cryptoKeys/x")
        assert kms.list_keys("projects/p/locations/global/keyRings/jvs") == sorted([KEY, OTHER_KEY])

    def test_zero_timeout_is_a_deadline_error(self, kms):
        with pytest.raises(RemoteServiceError) as ei:
            kms.list_versions(KEY, timeout=0)
        assert ei.value.code == JVS_E_DEADLINE_EXCEEDED

    def test_unknown_algorithm_is_rejected(self, kms):
        with pytest.raises(SigningError):
            kms.create_key(KEY, algorithm="RSA_SIGN_PKCS1_2048_SHA256")
