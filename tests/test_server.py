import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from jvs_service.audit_log import AuditLog
from jvs_service.breakglass import BREAKGLASS_CATEGORY, create_breakglass_token
from jvs_service.config import ServiceConfig
from jvs_service.lifecycle import version_name
from jvs_service.memory_backend import InMemoryKMS
from jvs_service.server import create_app
from jvs_service.service import JVSService
from jvs_service.tokens import Justification, JustificationRequest

from conftest import KEY, OTHER_KEY

_ENV = (
    "JVS_API_KEYS_JSON",
    "JVS_API_KEYS_FILE",
    "JVS_ALLOW_ANONYMOUS_ADMIN",
    "JVS_METRICS_TOKEN",
    "JVS_METRICS_ENABLED",
)

TOKEN_BODY = {"justifications": [{"category": "explanation", "value": "debugging ticket 123"}], "ttl": "10m"}


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit.jsonl"


@pytest.fixture
def service(clock, audit_path):
    kms = InMemoryKMS(clock=clock)
    config = ServiceConfig.from_mapping({"key_names": [KEY]})
    svc = JVSService(kms, config, clock=clock, audit=AuditLog(str(audit_path)))
    svc.rotate_all().raise_for_failures()
    return svc


@pytest.fixture
def make_client(monkeypatch, service):
    def _make(**env):
        for name in _ENV:
            monkeypatch.delenv(name, raising=False)
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        return TestClient(create_app(service))

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def admin(make_client):
    return make_client(JVS_API_KEYS_JSON=json.dumps({"k-alice": "alice"}))


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["keys"] == 1


class TestTokens:
    def test_issue_and_validate(self, client):
        r = client.post("/v1/token", json=TOKEN_BODY)
        assert r.status_code == 200, r.text
        token = r.json()["token"]

        r = client.post("/v1/validate", json={"token": token})
        assert r.status_code == 200
        body = r.json()
        assert body["valid"] is True
        assert body["claims"]["exp"] - body["claims"]["iat"] == 600
        assert body["claims"]["justs"] == TOKEN_BODY["justifications"]

    def test_ttl_seconds(self, client):
        body = {"justifications": TOKEN_BODY["justifications"], "ttl_seconds": 60}
        assert client.post("/v1/token", json=body).status_code == 200

    def test_authenticated_caller_becomes_subject(self, admin):
        r = admin.post("/v1/token", json=TOKEN_BODY, headers={"X-Api-Key": "k-alice"})
        token = r.json()["token"]
        claims = admin.post("/v1/validate", json={"token": token}).json()["claims"]
        assert claims["sub"] == "alice"

    def test_api_key_required_once_configured(self, admin):
        r = admin.post("/v1/token", json=TOKEN_BODY)
        assert r.status_code == 401
        assert r.json()["code"] == "JVS_E_AUTH_REQUIRED"
        assert r.json()["message"] == "API_KEY_REQUIRED"

    def test_invalid_request_lists_violations(self, client):
        r = client.post("/v1/token", json={"justifications": [], "ttl": "2h"})
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "JVS_E_INVALID_ARGUMENT"
        assert body["details"]["violations"] == ["no justifications specified", "ttl 2:00:00 exceeds maximum 1:00:00"]

    def test_unparseable_ttl_is_reported_with_other_violations(self, client):
        r = client.post("/v1/token", json={"justifications": [], "ttl": "soon"})
        assert r.status_code == 400
        assert r.json()["details"]["violations"] == ["no justifications specified", "ttl: invalid duration 'soon'"]

        r = client.post("/v1/token", json={**TOKEN_BODY, "ttl": "-5m"})
        assert r.json()["details"]["violations"] == ["ttl: invalid duration '-5m'"]

    def test_signing_failure_is_opaque(self, client, service):
        service.backend.fail_next("asymmetric_sign")
        r = client.post("/v1/token", json=TOKEN_BODY)
        assert r.status_code == 500
        assert r.json() == {
            "code": "JVS_E_INTERNAL",
            "message": "unable to sign token",
            "retryable": False,
            "http_status": 500,
        }


class TestValidate:
    def test_bad_signature(self, client):
        token = client.post("/v1/token", json=TOKEN_BODY).json()["token"]
        head, claims, _ = token.split(".")
        r = client.post("/v1/validate", json={"token": f"{head}.{claims}.AAAA"})
        assert r.status_code == 401
        assert r.json()["code"] == "JVS_E_SIGNATURE_INVALID"

    def test_unknown_key_is_rejected(self, client):
        r = client.post("/v1/validate", json={"token": "a.b.c", "key": OTHER_KEY})
        assert r.status_code == 400
        assert r.json()["details"]["key"] == OTHER_KEY

    def test_breakglass_follows_config(self, clock, audit_path):
        request = JustificationRequest([Justification(BREAKGLASS_CATEGORY, "KMS outage")], ttl=timedelta(minutes=5))
        token = create_breakglass_token(request, requestor="alice", now=clock())
        for allow, status in ((False, 401), (True, 200)):
            config = ServiceConfig.from_mapping({"key_names": [KEY], "allow_breakglass": allow})
            svc = JVSService(InMemoryKMS(clock=clock), config, clock=clock, audit=AuditLog(str(audit_path)))
            r = TestClient(create_app(svc)).post("/v1/validate", json={"token": token})
            assert r.status_code == status
        assert r.json()["claims"]["sub"] == "alice"


def test_jwks(client):
    r = client.get("/.well-known/jwks")
    assert r.status_code == 200
    assert "max-age" in r.headers["cache-control"]
    [jwk] = r.json()["keys"]
    assert jwk["kid"] == version_name(KEY, "1")


class TestRotate:
    def test_anonymous_rotation_refused(self, client):
        assert client.post("/v1/rotate").status_code == 401

    def test_anonymous_rotation_when_allowed(self, make_client):
        client = make_client(JVS_ALLOW_ANONYMOUS_ADMIN="1")
        r = client.post("/v1/rotate")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_rotation_after_age_refreshes_jwks(self, admin, clock):
        assert len(admin.get("/.well-known/jwks").json()["keys"]) == 1
        clock.advance(days=30)
        r = admin.post("/v1/rotate", headers={"X-Api-Key": "k-alice"})
        assert r.status_code == 200
        assert len(admin.get("/.well-known/jwks").json()["keys"]) == 2

    def test_failed_rotation_reports_per_key(self, admin, service):
        service.backend.fail_next("list_versions")
        r = admin.post("/v1/rotate", headers={"X-Api-Key": "k-alice"})
        assert r.status_code == 500
        body = r.json()
        assert body["code"] == "JVS_E_ROTATION_FAILED"
        assert list(body["details"]["failures"]) == [KEY]
        assert body["report"]["ok"] is False


class TestCertificateActions:
    def test_requires_admin(self, client):
        body = {"actions": [{"version": version_name(KEY, "1"), "action": "ROTATE", "reason": "drill"}]}
        assert client.post("/v1/certificate-actions", json=body).status_code == 401

    def test_rotate_is_audited_with_principal(self, admin, audit_path):
        body = {"actions": [{"version": version_name(KEY, "1"), "action": "ROTATE", "reason": "drill"}]}
        r = admin.post("/v1/certificate-actions", json=body, headers={"X-Api-Key": "k-alice"})
        assert r.status_code == 200, r.text
        [result] = r.json()["results"]
        assert result["promoted"] == version_name(KEY, "2")

        event = json.loads(audit_path.read_text(encoding="utf-8").splitlines()[-1])["event"]
        assert event["actor"] == "alice"
        assert event["reason"] == "drill"
        # Published keys reflect the action immediately.
        assert len(admin.get("/.well-known/jwks").json()["keys"]) == 2

    def test_orphaning_is_a_conflict(self, admin):
        body = {"actions": [{"version": version_name(KEY, "1"), "action": "FORCE_DISABLE", "reason": "leak"}]}
        r = admin.post("/v1/certificate-actions", json=body, headers={"X-Api-Key": "k-alice"})
        assert r.status_code == 409
        assert r.json()["code"] == "JVS_E_WOULD_ORPHAN_KEY"

    def test_partial_batch_still_refreshes_jwks(self, admin):
        v1, v2 = version_name(KEY, "1"), version_name(KEY, "2")
        headers = {"X-Api-Key": "k-alice"}
        rotate = {"actions": [{"version": v1, "action": "ROTATE", "reason": "drill"}]}
        assert admin.post("/v1/certificate-actions", json=rotate, headers=headers).status_code == 200
        assert [k["kid"] for k in admin.get("/.well-known/jwks").json()["keys"]] == [v1, v2]

        body = {
            "actions": [
                {"version": v1, "action": "FORCE_DISABLE", "reason": "leak"},
                {"version": v2, "action": "FORCE_DESTROY", "reason": "leak"},
            ]
        }
        r = admin.post("/v1/certificate-actions", json=body, headers=headers)
        assert r.status_code == 409
        assert r.json()["code"] == "JVS_E_INVALID_STATE_TRANSITION"
        # The disable went through, so v1 must stop being published at once.
        assert [k["kid"] for k in admin.get("/.well-known/jwks").json()["keys"]] == [v2]

    def test_unknown_action_is_a_validation_error(self, admin):
        body = {"actions": [{"version": version_name(KEY, "1"), "action": "EXPLODE"}]}
        r = admin.post("/v1/certificate-actions", json=body, headers={"X-Api-Key": "k-alice"})
        assert r.status_code == 422


class TestMetrics:
    def test_metrics_exposed(self, client):
        client.get("/v1/health")
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "jvs_http_requests_total" in r.text

    def test_metrics_token(self, make_client):
        client = make_client(JVS_METRICS_TOKEN="s3cret")
        assert client.get("/metrics").status_code == 403
        assert client.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200

    def test_metrics_disabled(self, make_client):
        client = make_client(JVS_METRICS_ENABLED="0")
        assert client.get("/metrics").status_code == 404
