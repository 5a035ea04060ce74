"""
Justification tokens.

A justification token is a compact JWS (``header.claims.signature``) signed by
the PRIMARY version of the configured key:

    header: {"alg": "ES256", "kid": <key version name>, "typ": "JWT"}
    claims: {"iss", "sub", "aud", "iat", "nbf", "exp", "jti", "justs": [...]}

The private key never leaves the backend: the pipeline hashes the signing
input, asks the backend for a DER signature over the digest, and bridges it to
the fixed-width ``R || S`` form. Requests are validated up front and every
violation is reported at once; no partial token is ever returned.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from jwt.utils import base64url_encode

from . import metrics
from .backend import Deadline
from .crypto import _now_utc, curve_for_algorithm, der_to_raw_signature
from .errors import InternalError, JVSError, ValidationError
from .rotation import RotationEngine

logger = logging.getLogger("jvs_service.tokens")

DEFAULT_ISSUER = "jvs.abcxyz.dev"
DEFAULT_AUDIENCE = "dev.abcxyz.jvs"
JUSTIFICATIONS_CLAIM = "justs"


@dataclass(frozen=True)
class Justification:
    category: str
    value: str = ""
    annotation: Mapping[str, str] = field(default_factory=dict)

    def as_claim(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"category": self.category, "value": self.value}
        if self.annotation:
            d["annotation"] = dict(self.annotation)
        return d


@dataclass(frozen=True)
class JustificationRequest:
    justifications: List[Justification] = field(default_factory=list)
    ttl: Optional[timedelta] = None
    audiences: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    # Set when the caller sent a ttl that could not be parsed.
    ttl_error: Optional[str] = None


@dataclass(frozen=True)
class CategoryRule:
    """A recognized justification category."""

    name: str
    requires_value: bool = True


DEFAULT_CATEGORIES: Dict[str, CategoryRule] = {
    "explanation": CategoryRule("explanation", requires_value=True),
}


class JustificationValidator:
    def __init__(
        self,
        categories: Optional[Mapping[str, CategoryRule]] = None,
        *,
        max_ttl: Optional[timedelta] = None,
    ):
        self.categories = dict(DEFAULT_CATEGORIES if categories is None else categories)
        self.max_ttl = max_ttl

    def validate(self, request: JustificationRequest) -> List[str]:
        """Return every violation in ``request`` (empty when valid)."""
        violations: List[str] = []
        if not request.justifications:
            violations.append("no justifications specified")
        for i, j in enumerate(request.justifications):
            rule = self.categories.get(j.category)
            if rule is None:
                violations.append(f"justification {i}: unrecognized category {j.category!r}")
            elif rule.requires_value and not (j.value or "").strip():
                violations.append(f"justification {i}: category {j.category!r} requires a value")

        if request.ttl_error:
            violations.append(f"ttl: {request.ttl_error}")
        elif request.ttl is None:
            violations.append("no ttl specified")
        elif request.ttl <= timedelta(0):
            violations.append("ttl must be positive")
        elif self.max_ttl is not None and request.ttl > self.max_ttl:
            violations.append(f"ttl {request.ttl} exceeds maximum {self.max_ttl}")
        return violations


def _b64_json(obj: Mapping[str, Any]) -> bytes:
    return base64url_encode(json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def token_claims(
    request: JustificationRequest,
    *,
    issuer: str,
    default_audiences: Iterable[str],
    requestor: Optional[str],
    now: datetime,
) -> Dict[str, Any]:
    """Registered claims plus justifications; the ttl is rounded up to whole seconds."""
    iat = int(now.timestamp())
    claims: Dict[str, Any] = {
        "iss": issuer,
        "aud": list(request.audiences) or list(default_audiences),
        "iat": iat,
        "nbf": iat,
        "exp": iat + math.ceil(request.ttl.total_seconds()),
        "jti": str(uuid.uuid4()),
        JUSTIFICATIONS_CLAIM: [j.as_claim() for j in request.justifications],
    }
    subject = request.subject or requestor
    if subject:
        claims["sub"] = subject
    return claims


class SigningPipeline:
    """Validates justification requests and signs tokens with the key's PRIMARY."""

    def __init__(
        self,
        engine: RotationEngine,
        key: str,
        *,
        validator: Optional[JustificationValidator] = None,
        issuer: str = DEFAULT_ISSUER,
        default_audiences: Iterable[str] = (DEFAULT_AUDIENCE,),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.backend = engine.backend
        self.key = key
        self.validator = validator or JustificationValidator()
        self.issuer = issuer
        self.default_audiences = list(default_audiences)
        self.clock = clock or engine.clock or _now_utc

    def build_claims(self, request: JustificationRequest, *, requestor: Optional[str], now: datetime) -> Dict[str, Any]:
        return token_claims(
            request, issuer=self.issuer, default_audiences=self.default_audiences, requestor=requestor, now=now
        )

    def create_token(
        self,
        request: JustificationRequest,
        *,
        requestor: Optional[str] = None,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> str:
        violations = self.validator.validate(request)
        if violations:
            metrics.record_token_issued("invalid")
            raise ValidationError("invalid justification request", violations=violations)

        claims = self.build_claims(request, requestor=requestor, now=now or self.clock())
        try:
            token = self._sign(claims, self.engine.make_deadline(deadline))
        except JVSError as e:
            # Callers get an opaque error; the cause stays in server logs.
            logger.error("signing token %s with %s failed: %s", claims["jti"], self.key, e.as_dict())
            metrics.record_token_issued("error")
            raise InternalError("unable to sign token") from e
        metrics.record_token_issued("issued")
        logger.info(
            "issued token jti=%s sub=%s ttl=%ss", claims["jti"], claims.get("sub"), int(request.ttl.total_seconds())
        )
        return token

    def _sign(self, claims: Mapping[str, Any], d: Deadline) -> str:
        primary = self.engine.get_primary(self.key, deadline=d)
        spec = curve_for_algorithm(primary.algorithm)
        header = {"alg": spec.jwt_alg, "kid": primary.name, "typ": "JWT"}
        signing_input = _b64_json(header) + b"." + _b64_json(claims)
        der = self.backend.asymmetric_sign(primary.name, spec.digest(signing_input), timeout=d.remaining())
        signature = der_to_raw_signature(der, spec)
        return (signing_input + b"." + base64url_encode(signature)).decode("ascii")
