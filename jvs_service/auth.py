"""Caller authentication for the HTTP API.

Callers present ``X-Api-Key``; the configured mapping turns it into a
principal, which becomes the audited actor of certificate actions and the
default ``sub`` of issued tokens. If no mapping is configured, requests are
anonymous and mutating endpoints refuse them unless explicitly allowed.

Env vars:
  - JVS_API_KEYS_JSON: JSON object mapping api_key -> principal
  - JVS_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

ENV_API_KEYS_JSON = "JVS_API_KEYS_JSON"
ENV_API_KEYS_FILE = "JVS_API_KEYS_FILE"

logger = logging.getLogger("jvs_service.auth")


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity."""

    principal: Optional[str]
    authenticated: bool
    error: Optional[str] = None


def _read_mapping() -> Optional[Any]:
    raw_json = os.getenv(ENV_API_KEYS_JSON)
    if raw_json:
        return json.loads(raw_json)
    file_path = os.getenv(ENV_API_KEYS_FILE)
    if file_path:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    return None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key -> principal lookup. ``principals=None`` means no keys are configured."""

    principals: Optional[Dict[str, str]] = None
    error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """A present but unreadable mapping yields an instance that rejects every caller."""
        try:
            data = _read_mapping()
        except (OSError, ValueError) as e:
            logger.error("API key mapping is unreadable: %s", e)
            return cls(principals={}, error="API_KEY_CONFIG_INVALID")
        if data is None:
            return cls()
        if not isinstance(data, dict):
            logger.error("API key mapping must be a JSON object, got %s", type(data).__name__)
            return cls(principals={}, error="API_KEY_CONFIG_INVALID")
        return cls(principals={str(k): str(v) for k, v in data.items()})

    def resolve_context(self, api_key: Optional[str]) -> AuthContext:
        """Resolve the caller; ``error`` is set when the request must be rejected."""
        if self.error:
            return AuthContext(principal=None, authenticated=False, error=self.error)
        if self.principals is None:
            return AuthContext(principal=None, authenticated=False)
        if not api_key:
            return AuthContext(principal=None, authenticated=False, error="API_KEY_REQUIRED")
        principal = self.principals.get(api_key)
        if principal is None:
            return AuthContext(principal=None, authenticated=False, error="API_KEY_INVALID")
        return AuthContext(principal=principal, authenticated=True)
