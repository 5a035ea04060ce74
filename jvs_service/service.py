"""Wires configuration and a backend into the service components."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .audit_log import AuditLog
from .backend import Deadline, SigningBackend, build_backend_from_env
from .cert_actions import CertificateActionService
from .config import ServiceConfig
from .crypto import _now_utc
from .jwks import KeySetPublisher
from .rotation import RotationEngine, RotationReport
from .tokens import JustificationValidator, SigningPipeline
from .verification import TokenVerifier

logger = logging.getLogger("jvs_service")


class JVSService:
    """One instance per process; every component shares the backend handle."""

    def __init__(
        self,
        backend: SigningBackend,
        config: ServiceConfig,
        *,
        clock: Callable[[], datetime] = _now_utc,
        audit: Optional[AuditLog] = None,
    ):
        self.backend = backend
        self.config = config
        self.engine = RotationEngine(
            backend,
            default_policy=config.default_policy,
            policies=config.policies,
            clock=clock,
            call_timeout=config.call_timeout.total_seconds(),
            max_workers=config.rotation_workers,
        )
        self.pipeline = SigningPipeline(
            self.engine,
            config.signing_key,
            validator=JustificationValidator(config.categories, max_ttl=config.max_token_ttl),
            issuer=config.issuer,
            default_audiences=[config.default_audience],
        )
        self.verifier = TokenVerifier(self.engine, allow_breakglass=config.allow_breakglass)
        self.publisher = KeySetPublisher(
            self.engine,
            config.key_names,
            key_rings=config.key_rings,
            cache_timeout=config.jwks_cache_timeout.total_seconds(),
        )
        self.cert_actions = CertificateActionService(self.engine, audit or AuditLog(config.audit_log_path))

    @classmethod
    def from_env(cls) -> "JVSService":
        config = ServiceConfig.load_from_env()
        backend = build_backend_from_env()
        logger.info(
            "configured %d key(s), %d key ring(s); signing with %s",
            len(config.key_names),
            len(config.key_rings),
            config.signing_key,
        )
        return cls(backend, config)

    def rotate_all(self, *, deadline: Optional[Deadline] = None) -> RotationReport:
        """Rotate every configured key and key ring."""
        report = self.engine.rotate_all(self.config.key_names, key_rings=self.config.key_rings, deadline=deadline)
        if any(o.actions for o in report.outcomes.values()):
            self.publisher.invalidate()
        if report.ok:
            logger.info("rotation finished for %d key(s)", len(report.outcomes))
        else:
            logger.error("rotation failed for %s", ", ".join(sorted(report.failures)))
        return report
