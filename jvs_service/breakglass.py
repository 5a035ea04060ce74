"""Breakglass tokens.

When the key management service is unreachable, an operator can still mint a
justification token locally. Breakglass tokens are HS256 JWTs signed with a
well-known secret, so they prove nothing about who minted them; they only
carry a ``breakglass`` justification explaining the emergency. Verifiers
refuse them unless breakglass acceptance is explicitly enabled, and every
accepted one is logged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import jwt

from . import metrics
from .crypto import _now_utc
from .errors import SignatureInvalid, ValidationError
from .tokens import (
    DEFAULT_AUDIENCE,
    DEFAULT_ISSUER,
    JUSTIFICATIONS_CLAIM,
    CategoryRule,
    JustificationRequest,
    JustificationValidator,
    token_claims,
)

logger = logging.getLogger("jvs_service.breakglass")

BREAKGLASS_CATEGORY = "breakglass"
BREAKGLASS_ALGORITHM = "HS256"

# Public on purpose: anyone can mint a breakglass token.
BREAKGLASS_HMAC_SECRET = "BHzwNUbxcgpNoDfzwzt4Dr2nVXByUCWl1m8Eq2Jh26CGqu8IQ0VdiyjxnCtNahh9"

_VALIDATOR = JustificationValidator({BREAKGLASS_CATEGORY: CategoryRule(BREAKGLASS_CATEGORY, requires_value=True)})


def create_breakglass_token(
    request: JustificationRequest,
    *,
    issuer: str = DEFAULT_ISSUER,
    default_audiences: Iterable[str] = (DEFAULT_AUDIENCE,),
    requestor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Mint a breakglass token. Every justification must use the breakglass category."""
    violations = _VALIDATOR.validate(request)
    if violations:
        metrics.record_token_issued("invalid")
        raise ValidationError("invalid breakglass request", violations=violations)
    claims = token_claims(
        request, issuer=issuer, default_audiences=default_audiences, requestor=requestor, now=now or _now_utc()
    )
    token = jwt.encode(claims, BREAKGLASS_HMAC_SECRET, algorithm=BREAKGLASS_ALGORITHM, headers={"typ": "JWT"})
    metrics.record_token_issued("breakglass")
    logger.warning("issued breakglass token jti=%s sub=%s", claims["jti"], claims.get("sub"))
    return token


def is_breakglass_token(token: str) -> bool:
    """True when the token header claims to be an HS256 JWT."""
    try:
        header = jwt.get_unverified_header(str(token or ""))
    except jwt.DecodeError:
        return False
    return header.get("alg") == BREAKGLASS_ALGORITHM and header.get("typ") == "JWT"


def parse_breakglass_token(token: str) -> Dict[str, Any]:
    """Check the HMAC and the breakglass justification; return the claims.

    Time claims are left to the caller so breakglass and signed tokens share
    the same clock and leeway.
    """
    try:
        claims = jwt.decode(
            token,
            BREAKGLASS_HMAC_SECRET,
            algorithms=[BREAKGLASS_ALGORITHM],
            options={"verify_exp": False, "verify_nbf": False, "verify_iat": False, "verify_aud": False},
        )
    except jwt.InvalidTokenError as e:
        raise SignatureInvalid("breakglass token signature could not be verified") from e

    justs = claims.get(JUSTIFICATIONS_CLAIM)
    if not isinstance(justs, list) or not any(
        isinstance(j, dict) and j.get("category") == BREAKGLASS_CATEGORY and str(j.get("value") or "").strip()
        for j in justs
    ):
        raise ValidationError("breakglass token carries no breakglass justification")
    return claims
