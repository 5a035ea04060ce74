"""Justification Verification Service.

This package issues short-lived signed "justification" tokens and manages the
lifecycle of the KMS keys that sign them:

- Rotation engine: exactly one ENABLED primary version per key; demoted
  versions stay verifiable for a propagation delay, then are disabled and
  eventually destroyed.
- Signing pipeline: validated justifications -> JWT signed by the primary
  version through the backend (the private key never leaves the KMS).
- Verification and public key discovery (JWKS) across all ENABLED versions.
- Manual certificate actions for incident response, audited.
- Breakglass tokens for KMS outages, accepted only where explicitly allowed.

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from jvs_service import JVSService, create_app
    from jvs_service import RotationEngine, SigningPipeline, TokenVerifier
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    try:
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "JVSService",
    "create_app",
    "RotationEngine",
    "RotationPolicy",
    "SigningPipeline",
    "TokenVerifier",
    "create_breakglass_token",
    "KeySetPublisher",
    "CertificateActionService",
    "InMemoryKMS",
    "ServiceConfig",
    "JVSError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "JVSService": ("jvs_service.service", "JVSService"),
    "create_app": ("jvs_service.server", "create_app"),
    "RotationEngine": ("jvs_service.rotation", "RotationEngine"),
    "RotationPolicy": ("jvs_service.lifecycle", "RotationPolicy"),
    "SigningPipeline": ("jvs_service.tokens", "SigningPipeline"),
    "TokenVerifier": ("jvs_service.verification", "TokenVerifier"),
    "create_breakglass_token": ("jvs_service.breakglass", "create_breakglass_token"),
    "KeySetPublisher": ("jvs_service.jwks", "KeySetPublisher"),
    "CertificateActionService": ("jvs_service.cert_actions", "CertificateActionService"),
    "InMemoryKMS": ("jvs_service.memory_backend", "InMemoryKMS"),
    "ServiceConfig": ("jvs_service.config", "ServiceConfig"),
    "JVSError": ("jvs_service.errors", "JVSError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
