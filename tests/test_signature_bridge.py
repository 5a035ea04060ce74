import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from hypothesis import given, settings
from hypothesis import strategies as st

from jvs_service.crypto import (
    CURVES,
    curve_for_algorithm,
    curve_for_jwt_alg,
    der_to_raw_signature,
    public_key_to_jwk,
    raw_to_der_signature,
    verify_raw_signature,
)
from jvs_service.errors import SigningError

SPECS = list(CURVES.values())

# One keypair per curve; key generation is the slow part.
_KEYS = {spec.jwt_alg: ec.generate_private_key(spec.curve()) for spec in SPECS}


def _pem(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def test_curve_table():
    assert curve_for_algorithm("EC_SIGN_P256_SHA256").jwt_alg == "ES256"
    assert curve_for_algorithm("EC_SIGN_P256_SHA256").coordinate_size == 32
    assert curve_for_algorithm("EC_SIGN_P384_SHA384").coordinate_size == 48
    assert curve_for_algorithm("EC_SIGN_P521_SHA512").coordinate_size == 66
    assert curve_for_jwt_alg("ES512").jwk_crv == "P-521"
    with pytest.raises(SigningError):
        curve_for_algorithm("RSA_SIGN_PSS_2048_SHA256")
    with pytest.raises(SigningError):
        curve_for_jwt_alg("none")


@settings(max_examples=40, deadline=None)
@given(spec=st.sampled_from(SPECS), message=st.binary(max_size=512))
def test_sign_bridge_and_verify_round_trip(spec, message):
    key = _KEYS[spec.jwt_alg]
    der = key.sign(message, ec.ECDSA(spec.hash_cls()))

    raw = der_to_raw_signature(der, spec)
    assert len(raw) == spec.signature_size
    assert verify_raw_signature(_pem(key), spec, message, raw)

    back = raw_to_der_signature(raw, spec)
    assert decode_dss_signature(back) == decode_dss_signature(der)
    key.public_key().verify(back, message, ec.ECDSA(spec.hash_cls()))


@given(
    spec=st.sampled_from(SPECS),
    r=st.integers(min_value=1, max_value=2**64),
    s=st.integers(min_value=1, max_value=2**64),
)
def test_short_components_are_left_padded(spec, r, s):
    raw = der_to_raw_signature(encode_dss_signature(r, s), spec)
    size = spec.coordinate_size
    assert raw[:size] == r.to_bytes(size, "big")
    assert raw[size:] == s.to_bytes(size, "big")
    assert decode_dss_signature(raw_to_der_signature(raw, spec)) == (r, s)


@given(spec=st.sampled_from(SPECS), extra_bits=st.integers(min_value=1, max_value=64), which=st.sampled_from("rs"))
def test_oversized_component_is_rejected(spec, extra_bits, which):
    # Smallest integer whose big-endian encoding needs one byte more than the curve allows.
    too_big = 1 << (8 * spec.coordinate_size + extra_bits - 1)
    r, s = (too_big, 1) if which == "r" else (1, too_big)
    with pytest.raises(SigningError) as ei:
        der_to_raw_signature(encode_dss_signature(r, s), spec)
    assert ei.value.details["component"] == which


def test_p256_signature_rejected_as_p521_mismatch_direction():
    # A P-521 signature bridged as P-256 overflows the 32-byte width.
    p521 = curve_for_algorithm("EC_SIGN_P521_SHA512")
    p256 = curve_for_algorithm("EC_SIGN_P256_SHA256")
    der = _KEYS["ES512"].sign(b"payload", ec.ECDSA(p521.hash_cls()))
    r, s = decode_dss_signature(der)
    if max(r, s).bit_length() <= 256:
        pytest.skip("signature happened to fit in 32 bytes")
    with pytest.raises(SigningError):
        der_to_raw_signature(der, p256)


def test_malformed_der_and_wrong_raw_length_are_rejected():
    spec = curve_for_algorithm("EC_SIGN_P256_SHA256")
    with pytest.raises(SigningError):
        der_to_raw_signature(b"\x30\x02\x01", spec)
    with pytest.raises(SigningError):
        raw_to_der_signature(b"\x00" * 63, spec)


def test_verify_rejects_tampered_message_and_wrong_curve():
    spec = curve_for_algorithm("EC_SIGN_P256_SHA256")
    key = _KEYS["ES256"]
    raw = der_to_raw_signature(key.sign(b"hello", ec.ECDSA(spec.hash_cls())), spec)
    assert verify_raw_signature(_pem(key), spec, b"hello", raw)
    assert not verify_raw_signature(_pem(key), spec, b"hellO", raw)
    assert not verify_raw_signature(_pem(_KEYS["ES384"]), spec, b"hello", raw)
    assert not verify_raw_signature(_pem(key), spec, b"hello", raw[:-1])


def test_public_key_to_jwk_coordinates_are_fixed_width():
    import jwt

    for spec in SPECS:
        jwk = public_key_to_jwk("kid-1", _pem(_KEYS[spec.jwt_alg]), spec)
        assert jwk["kty"] == "EC"
        assert jwk["crv"] == spec.jwk_crv
        assert jwk["alg"] == spec.jwt_alg
        assert jwk["kid"] == "kid-1"
        # PyJWT accepts the JWK as-is.
        assert jwt.PyJWK(jwk).key_id == "kid-1"

    with pytest.raises(SigningError):
        public_key_to_jwk("kid-1", _pem(_KEYS["ES384"]), curve_for_algorithm("EC_SIGN_P256_SHA256"))
