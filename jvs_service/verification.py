"""Token verification against every ENABLED version of a key.

During a rotation window a key has more than one ENABLED version (the new
PRIMARY and the demoted OLD one), so a token is checked against each of them;
the version named by the token's ``kid`` is tried first. Breakglass tokens
are refused unless the verifier was built with ``allow_breakglass``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from jwt.utils import base64url_decode

from . import metrics
from .backend import Deadline, PublicKeyInfo
from .breakglass import is_breakglass_token, parse_breakglass_token
from .crypto import CURVES, _now_utc, verify_raw_signature
from .errors import (
    JVS_E_TOKEN_EXPIRED,
    JVS_E_TOKEN_NOT_YET_VALID,
    JVSError,
    KeyUnavailable,
    RemoteServiceError,
    SignatureInvalid,
    ValidationError,
)
from .lifecycle import KeyVersion
from .rotation import RotationEngine

logger = logging.getLogger("jvs_service.verification")

DEFAULT_LEEWAY = timedelta(seconds=30)


def split_token(token: str) -> Tuple[Dict[str, Any], Dict[str, Any], bytes, bytes]:
    """Return (header, claims, signing_input, signature). Raises ``SignatureInvalid``."""
    parts = str(token or "").strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise SignatureInvalid("token is not a compact JWS")
    try:
        header = json.loads(base64url_decode(parts[0]))
        claims = json.loads(base64url_decode(parts[1]))
        signature = base64url_decode(parts[2])
    except (ValueError, TypeError) as e:
        raise SignatureInvalid("token is not a compact JWS") from e
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise SignatureInvalid("token header and claims must be JSON objects")
    return header, claims, f"{parts[0]}.{parts[1]}".encode("ascii"), signature


class TokenVerifier:
    def __init__(
        self,
        engine: RotationEngine,
        *,
        leeway: timedelta = DEFAULT_LEEWAY,
        clock: Optional[Callable[[], datetime]] = None,
        allow_breakglass: bool = False,
    ):
        self.engine = engine
        self.backend = engine.backend
        self.leeway = leeway
        self.allow_breakglass = allow_breakglass
        self.clock = clock or engine.clock or _now_utc

    def verify_token(
        self,
        key: str,
        token: str,
        *,
        now: Optional[datetime] = None,
        check_times: bool = True,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """Verify ``token`` against the ENABLED versions of ``key`` and return its claims."""
        try:
            if is_breakglass_token(token):
                claims = self._verify_breakglass(key, token, now, check_times)
                outcome = "breakglass"
            else:
                claims = self._verify(key, token, now, check_times, self.engine.make_deadline(deadline))
                outcome = "ok"
        except JVSError as e:
            metrics.record_verification(e.code)
            raise
        metrics.record_verification(outcome)
        return claims

    def _verify_breakglass(self, key, token, now, check_times) -> Dict[str, Any]:
        if not self.allow_breakglass:
            raise SignatureInvalid("breakglass tokens are not accepted", key=key)
        claims = parse_breakglass_token(token)
        if check_times:
            self._check_times(claims, now or self.clock())
        logger.warning("accepted breakglass token jti=%s sub=%s for %s", claims.get("jti"), claims.get("sub"), key)
        return claims

    def _verify(self, key, token, now, check_times, d) -> Dict[str, Any]:
        versions = self.engine.enabled_versions(key, deadline=d)
        if not versions:
            raise KeyUnavailable(f"{key} has no enabled versions", key=key)

        candidates: List[Tuple[KeyVersion, PublicKeyInfo]] = []
        for v in versions:
            try:
                candidates.append((v, self.backend.get_public_key(v.name, timeout=d.remaining())))
            except RemoteServiceError as e:
                logger.warning("public key of %s unavailable: %s", v.name, e)
        if not candidates:
            raise KeyUnavailable(f"no public key of {key} could be fetched", key=key)

        header, claims, signing_input, signature = split_token(token)
        kid = header.get("kid")
        alg = header.get("alg")
        candidates.sort(key=lambda c: c[0].name != kid)

        for v, info in candidates:
            spec = CURVES.get(info.algorithm)
            if spec is None or spec.jwt_alg != alg:
                continue
            if verify_raw_signature(info.pem, spec, signing_input, signature):
                logger.debug("token verified with %s", v.name)
                break
        else:
            raise SignatureInvalid(key=key)

        if check_times:
            self._check_times(claims, now or self.clock())
        return claims

    def _check_times(self, claims: Dict[str, Any], now: datetime) -> None:
        check_token_times(claims, now, self.leeway)


def check_token_times(claims: Dict[str, Any], now: datetime, leeway: timedelta = DEFAULT_LEEWAY) -> None:
    """Raise ``ValidationError`` if ``exp``/``nbf`` put ``now`` outside the token's lifetime."""
    ts = now.timestamp()
    slack = leeway.total_seconds()
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and ts > exp + slack:
        raise ValidationError("token has expired", code=JVS_E_TOKEN_EXPIRED, http_status=401, exp=exp)
    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and ts + slack < nbf:
        raise ValidationError("token is not yet valid", code=JVS_E_TOKEN_NOT_YET_VALID, http_status=401, nbf=nbf)
