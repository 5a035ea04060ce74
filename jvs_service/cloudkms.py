"""Google Cloud KMS backend.

Cloud KMS key versions carry no labels of their own, so lifecycle labels for
all versions of a key live in the parent CryptoKey's label map:

    jvs_<version id> = <label>-<unix seconds>     e.g. jvs_3 = primary-1700000000

Relabeling several versions is then a single ``UpdateCryptoKey`` call, which
is what makes promotion (new -> primary, primary -> old) atomic.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as gexc
from google.cloud import kms

from .backend import LabelChanges, PublicKeyInfo
from .errors import JVS_E_DEADLINE_EXCEEDED, RemoteServiceError, ValidationError
from .lifecycle import (
    BackendState,
    KeyVersion,
    LifecycleLabel,
    check_label_transition,
    decode_label,
    encode_label,
    key_name_from_version,
)

logger = logging.getLogger("jvs_service.cloudkms")

LABEL_PREFIX = "jvs_"

_STATE_MAP = {
    "PENDING_GENERATION": BackendState.PENDING_GENERATION,
    "PENDING_IMPORT": BackendState.PENDING_GENERATION,
    "ENABLED": BackendState.ENABLED,
    "DISABLED": BackendState.DISABLED,
    "DESTROY_SCHEDULED": BackendState.SCHEDULED_FOR_DESTRUCTION,
    "DESTROYED": BackendState.DESTROYED,
    "IMPORT_FAILED": BackendState.DESTROYED,
    "GENERATION_FAILED": BackendState.DESTROYED,
}

_DIGEST_FIELDS = {32: "sha256", 48: "sha384", 64: "sha512"}

_RETRYABLE = (
    gexc.DeadlineExceeded,
    gexc.ServiceUnavailable,
    gexc.InternalServerError,
    gexc.TooManyRequests,
    gexc.Aborted,
)


def _label_key(version_name: str) -> str:
    return LABEL_PREFIX + version_name.rsplit("/", 1)[-1]


def _enum_name(value: Any) -> str:
    return str(getattr(value, "name", value))


class CloudKMSBackend:
    """``SigningBackend`` backed by ``google.cloud.kms.KeyManagementServiceClient``."""

    def __init__(self, client: Optional[Any] = None):
        self._client = client or kms.KeyManagementServiceClient()

    def _call(self, op: str, target: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except gexc.GoogleAPICallError as e:
            logger.warning("cloud kms %s on %s failed: %s", op, target, e)
            code = JVS_E_DEADLINE_EXCEEDED if isinstance(e, gexc.DeadlineExceeded) else None
            extra = {"code": code} if code else {}
            raise RemoteServiceError(
                f"cloud kms {op} failed",
                retryable=isinstance(e, _RETRYABLE),
                op=op,
                target=target,
                cause=str(e),
                **extra,
            ) from e
        except gexc.RetryError as e:
            raise RemoteServiceError(f"cloud kms {op} gave up retrying", op=op, target=target, cause=str(e)) from e

    def _labels(self, key: str, timeout: Optional[float]) -> Dict[str, str]:
        ck = self._call("get_crypto_key", key, self._client.get_crypto_key, request={"name": key}, timeout=timeout)
        return dict(ck.labels)

    def _to_version(self, v: Any, labels: Dict[str, str]) -> KeyVersion:
        label, label_time = decode_label(labels.get(_label_key(v.name)))
        return KeyVersion(
            name=v.name,
            key=key_name_from_version(v.name),
            create_time=v.create_time,
            state=_STATE_MAP.get(_enum_name(v.state), BackendState.DESTROYED),
            label=label,
            label_time=label_time,
            algorithm=_enum_name(v.algorithm),
        )

    def list_versions(self, key: str, *, timeout: Optional[float] = None) -> List[KeyVersion]:
        labels = self._labels(key, timeout)
        pager = self._call(
            "list_crypto_key_versions",
            key,
            self._client.list_crypto_key_versions,
            request={"parent": key, "filter": "state != DESTROYED"},
            timeout=timeout,
        )
        out = [self._to_version(v, labels) for v in pager]
        return [v for v in out if v.state != BackendState.DESTROYED]

    def get_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        v = self._call("get_crypto_key_version", name, self._client.get_crypto_key_version, request={"name": name}, timeout=timeout)
        return self._to_version(v, self._labels(key_name_from_version(name), timeout))

    def create_version(self, key: str, *, timeout: Optional[float] = None) -> KeyVersion:
        v = self._call(
            "create_crypto_key_version",
            key,
            self._client.create_crypto_key_version,
            request={"parent": key, "crypto_key_version": {}},
            timeout=timeout,
        )
        self.update_labels(key, {v.name: (LifecycleLabel.NEW, v.create_time)}, timeout=timeout)
        return self._to_version(v, {_label_key(v.name): encode_label(LifecycleLabel.NEW, v.create_time)})

    def update_labels(self, key: str, changes: LabelChanges, *, timeout: Optional[float] = None) -> None:
        labels = self._labels(key, timeout)
        for name, (label, at) in changes.items():
            if key_name_from_version(name) != key:
                raise ValidationError(f"{name} does not belong to {key}", version=name, key=key)
            current, _ = decode_label(labels.get(_label_key(name)))
            check_label_transition(current, label)
            labels[_label_key(name)] = encode_label(label, at)
        self._call(
            "update_crypto_key",
            key,
            self._client.update_crypto_key,
            request={"crypto_key": {"name": key, "labels": labels}, "update_mask": {"paths": ["labels"]}},
            timeout=timeout,
        )

    def disable_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        v = self._call(
            "update_crypto_key_version",
            name,
            self._client.update_crypto_key_version,
            request={
                "crypto_key_version": {"name": name, "state": kms.CryptoKeyVersion.CryptoKeyVersionState.DISABLED},
                "update_mask": {"paths": ["state"]},
            },
            timeout=timeout,
        )
        return self._to_version(v, self._labels(key_name_from_version(name), timeout))

    def destroy_version(self, name: str, *, timeout: Optional[float] = None) -> KeyVersion:
        key = key_name_from_version(name)
        v = self._call("destroy_crypto_key_version", name, self._client.destroy_crypto_key_version, request={"name": name}, timeout=timeout)
        labels = self._labels(key, timeout)
        # CryptoKeys hold at most 64 labels; drop the entry of a destroyed version.
        if labels.pop(_label_key(name), None) is not None:
            self._call(
                "update_crypto_key",
                key,
                self._client.update_crypto_key,
                request={"crypto_key": {"name": key, "labels": labels}, "update_mask": {"paths": ["labels"]}},
                timeout=timeout,
            )
        return self._to_version(v, labels)

    def get_public_key(self, name: str, *, timeout: Optional[float] = None) -> PublicKeyInfo:
        pk = self._call("get_public_key", name, self._client.get_public_key, request={"name": name}, timeout=timeout)
        return PublicKeyInfo(pem=pk.pem, algorithm=_enum_name(pk.algorithm))

    def asymmetric_sign(self, name: str, digest: bytes, *, timeout: Optional[float] = None) -> bytes:
        field = _DIGEST_FIELDS.get(len(digest))
        if field is None:
            raise ValidationError(f"unsupported digest length {len(digest)}", length=len(digest))
        resp = self._call(
            "asymmetric_sign",
            name,
            self._client.asymmetric_sign,
            request={"name": name, "digest": {field: bytes(digest)}},
            timeout=timeout,
        )
        return bytes(resp.signature)

    def list_keys(self, key_ring: str, *, timeout: Optional[float] = None) -> List[str]:
        pager = self._call("list_crypto_keys", key_ring, self._client.list_crypto_keys, request={"parent": key_ring}, timeout=timeout)
        return sorted(k.name for k in pager)
