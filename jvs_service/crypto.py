"""
JVS cryptography helpers.

- Curve/algorithm table mapping backend algorithms to token algorithms.
- Signature bridging between the backend's DER ``SEQUENCE{R, S}`` and the
  fixed-width ``R || S`` form used by compact web tokens.
- Public key loading, JWK export and verification.
- Hashing helpers shared with the audit log.

No primitive is implemented here; everything delegates to ``cryptography``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Type

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from jwt.utils import base64url_encode

from .errors import SigningError, ValidationError


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def canonical_json_dumps(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8 preserved."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


# ---------------------------
# Curves
# ---------------------------

@dataclass(frozen=True)
class CurveSpec:
    """One signing algorithm as seen by the backend and by token consumers."""

    backend_algorithm: str
    jwt_alg: str
    jwk_crv: str
    curve: Type[ec.EllipticCurve]
    hash_cls: Type[hashes.HashAlgorithm]

    @property
    def coordinate_size(self) -> int:
        return (self.curve.key_size + 7) // 8

    @property
    def signature_size(self) -> int:
        return 2 * self.coordinate_size

    def digest(self, data: bytes) -> bytes:
        h = hashes.Hash(self.hash_cls())
        h.update(data)
        return h.finalize()


CURVES: Dict[str, CurveSpec] = {
    spec.backend_algorithm: spec
    for spec in (
        CurveSpec("EC_SIGN_P256_SHA256", "ES256", "P-256", ec.SECP256R1, hashes.SHA256),
        CurveSpec("EC_SIGN_P384_SHA384", "ES384", "P-384", ec.SECP384R1, hashes.SHA384),
        CurveSpec("EC_SIGN_P521_SHA512", "ES512", "P-521", ec.SECP521R1, hashes.SHA512),
    )
}


def curve_for_algorithm(algorithm: str) -> CurveSpec:
    """Look up a backend algorithm; unsupported algorithms are a signing error."""
    spec = CURVES.get(str(algorithm))
    if spec is None:
        raise SigningError(f"unsupported signing algorithm {algorithm!r}", algorithm=str(algorithm))
    return spec


def curve_for_jwt_alg(alg: str) -> CurveSpec:
    for spec in CURVES.values():
        if spec.jwt_alg == alg:
            return spec
    raise SigningError(f"unsupported token algorithm {alg!r}", alg=str(alg))


# ---------------------------
# Signature bridging
# ---------------------------

def der_to_raw_signature(der: bytes, spec: CurveSpec) -> bytes:
    """Convert a DER ECDSA signature to fixed-width ``R || S``.

    Raises ``SigningError`` if the DER cannot be parsed or if R or S does not
    fit the curve's coordinate size (a curve mismatch between the backend key
    and the declared algorithm).
    """
    try:
        r, s = decode_dss_signature(bytes(der))
    except (ValueError, TypeError) as e:
        raise SigningError("malformed DER signature", cause=str(e)) from e
    size = spec.coordinate_size
    out = b""
    for label, value in (("r", r), ("s", s)):
        if value < 0:
            raise SigningError(f"negative {label} in signature")
        width = (value.bit_length() + 7) // 8
        if width > size:
            raise SigningError(
                f"signature {label} is {width} bytes, exceeds {size} for {spec.jwt_alg}",
                component=label,
                length=width,
                max_length=size,
            )
        out += value.to_bytes(size, byteorder="big")
    return out


def raw_to_der_signature(raw: bytes, spec: CurveSpec) -> bytes:
    """Inverse of ``der_to_raw_signature``."""
    raw = bytes(raw)
    if len(raw) != spec.signature_size:
        raise SigningError(
            f"raw signature must be {spec.signature_size} bytes for {spec.jwt_alg}",
            length=len(raw),
        )
    size = spec.coordinate_size
    r = int.from_bytes(raw[:size], byteorder="big")
    s = int.from_bytes(raw[size:], byteorder="big")
    return encode_dss_signature(r, s)


# ---------------------------
# Public keys
# ---------------------------

def load_public_key_pem(pem: str | bytes) -> ec.EllipticCurvePublicKey:
    data = pem.encode("ascii") if isinstance(pem, str) else bytes(pem)
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as e:
        raise ValidationError("unparseable public key", cause=str(e)) from e
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValidationError("public key is not an EC key", key_type=type(key).__name__)
    return key


def check_key_matches_curve(key: ec.EllipticCurvePublicKey, spec: CurveSpec) -> None:
    if not isinstance(key.curve, spec.curve):
        raise SigningError(
            f"public key curve {key.curve.name} does not match {spec.jwt_alg}",
            curve=key.curve.name,
            alg=spec.jwt_alg,
        )


def public_key_to_jwk(kid: str, pem: str | bytes, spec: CurveSpec) -> Dict[str, str]:
    """Export an EC public key as a JWK with ``kid``/``alg``/``use`` set."""
    key = load_public_key_pem(pem)
    check_key_matches_curve(key, spec)
    numbers = key.public_numbers()
    size = spec.coordinate_size
    return {
        "kty": "EC",
        "crv": spec.jwk_crv,
        "x": base64url_encode(numbers.x.to_bytes(size, "big")).decode("ascii"),
        "y": base64url_encode(numbers.y.to_bytes(size, "big")).decode("ascii"),
        "kid": kid,
        "alg": spec.jwt_alg,
        "use": "sig",
    }


def verify_raw_signature(pem: str | bytes, spec: CurveSpec, message: bytes, raw_signature: bytes) -> bool:
    """Verify a fixed-width signature over ``message``. Returns False on any mismatch."""
    try:
        der = raw_to_der_signature(raw_signature, spec)
    except SigningError:
        return False
    key = load_public_key_pem(pem)
    if not isinstance(key.curve, spec.curve):
        return False
    try:
        key.verify(der, bytes(message), ec.ECDSA(spec.hash_cls()))
        return True
    except InvalidSignature:
        return False
