"""Service configuration.

Configuration is read once at startup and is read-only afterwards. Sources, in
increasing priority:

1. A JSON document from ``JVS_CONFIG_FILE`` (path) or ``JVS_CONFIG_JSON`` (inline).
2. Individual ``JVS_*`` environment variables.

Durations use Go-style strings (``"90s"``, ``"10m"``, ``"1h30m"``, ``"720h"``)
or plain seconds. All problems are collected and reported in one
``ConfigError`` so a bad deployment shows everything that is wrong at once.

Example document::

    {
      "key_names": ["projects/p/locations/global/keyRings/jvs/cryptoKeys/signer"],
      "rotation_age": "720h",
      "propagation_delay": "2h",
      "destroy_after": "168h",
      "max_token_ttl": "1h",
      "policies": {
        "projects/p/locations/global/keyRings/jvs/cryptoKeys/signer": {"rotation_age": "168h"}
      },
      "justification_categories": {"explanation": {"requires_value": true}}
    }
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema

from .errors import ConfigError, ValidationError
from .lifecycle import RotationPolicy
from .tokens import DEFAULT_AUDIENCE, DEFAULT_CATEGORIES, DEFAULT_ISSUER, CategoryRule

ENV_CONFIG_FILE = "JVS_CONFIG_FILE"
ENV_CONFIG_JSON = "JVS_CONFIG_JSON"

# field name -> environment variable
ENV_OVERRIDES = {
    "key_names": "JVS_KEY_NAMES",
    "key_rings": "JVS_KEY_RINGS",
    "signing_key": "JVS_SIGNING_KEY",
    "rotation_age": "JVS_ROTATION_AGE",
    "propagation_delay": "JVS_PROPAGATION_DELAY",
    "destroy_after": "JVS_DESTROY_AFTER",
    "max_token_ttl": "JVS_MAX_TOKEN_TTL",
    "issuer": "JVS_ISSUER",
    "default_audience": "JVS_DEFAULT_AUDIENCE",
    "justification_categories": "JVS_JUSTIFICATION_CATEGORIES",
    "jwks_cache_timeout": "JVS_JWKS_CACHE_TIMEOUT",
    "port": "JVS_PORT",
    "audit_log_path": "JVS_AUDIT_LOG_PATH",
    "rotation_workers": "JVS_ROTATION_WORKERS",
    "call_timeout": "JVS_CALL_TIMEOUT",
    "allow_breakglass": "JVS_ALLOW_BREAKGLASS",
}

DEFAULTS: Dict[str, Any] = {
    "rotation_age": "720h",
    "propagation_delay": "2h",
    "destroy_after": "168h",
    "max_token_ttl": "1h",
    "issuer": DEFAULT_ISSUER,
    "default_audience": DEFAULT_AUDIENCE,
    "jwks_cache_timeout": "5m",
    "port": 8080,
    "rotation_workers": 8,
    "call_timeout": "10s",
    "allow_breakglass": False,
}

_DURATION = {"type": ["string", "number"]}
_STRINGS = {"oneOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]}

# Draft 2020-12. Structure only; values are range-checked in from_mapping.
CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "key_names": _STRINGS,
        "key_rings": _STRINGS,
        "signing_key": {"type": "string"},
        "rotation_age": _DURATION,
        "propagation_delay": _DURATION,
        "destroy_after": _DURATION,
        "max_token_ttl": _DURATION,
        "jwks_cache_timeout": _DURATION,
        "call_timeout": _DURATION,
        "issuer": {"type": "string", "minLength": 1},
        "default_audience": {"type": "string", "minLength": 1},
        "port": {"type": ["integer", "string"]},
        "rotation_workers": {"type": ["integer", "string"]},
        "audit_log_path": {"type": "string"},
        "allow_breakglass": {"type": ["boolean", "string"]},
        "policies": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "rotation_age": _DURATION,
                    "propagation_delay": _DURATION,
                    "destroy_after": _DURATION,
                },
            },
        },
        "justification_categories": {
            "oneOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string"}},
                {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "properties": {"requires_value": {"type": "boolean"}},
                    },
                },
            ]
        },
    },
}

_CONFIG_VALIDATOR = jsonschema.Draft202012Validator(CONFIG_SCHEMA)


def schema_problems(data: Any) -> List[str]:
    """Structural problems of a configuration document, ordered by location."""
    errors = sorted(_CONFIG_VALIDATOR.iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
    out = []
    for e in errors:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        out.append(f"{loc}: {e.message}")
    return out


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: Any) -> timedelta:
    """Parse ``"1h30m"``-style durations (or numbers of seconds) into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=float(value))
    s = str(value or "").strip()
    if not s:
        raise ValidationError("empty duration")
    try:
        return timedelta(seconds=float(s))
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(s) or pos == 0:
        raise ValidationError(f"invalid duration {value!r}")
    return timedelta(seconds=total)


def parse_ttl(value: Any) -> Tuple[Optional[timedelta], Optional[str]]:
    """Like ``parse_duration`` but returns the problem instead of raising, so the
    request validator can report it alongside every other violation."""
    if value is None:
        return None, None
    try:
        return parse_duration(value), None
    except ValidationError as e:
        return None, e.message


def format_duration(td: timedelta) -> str:
    seconds = int(td.total_seconds())
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return "".join(f"{n}{u}" for n, u in ((h, "h"), (m, "m"), (s, "s")) if n) or "0s"


def _split_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ValidationError(f"expected a list or comma-separated string, got {type(value).__name__}")
    return tuple(dict.fromkeys(i.strip() for i in items if i.strip()))


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValidationError(f"expected a boolean, got {value!r}")


def _parse_categories(value: Any) -> Dict[str, CategoryRule]:
    if isinstance(value, str):
        value = json.loads(value)
    if isinstance(value, list):
        return {str(n): CategoryRule(str(n)) for n in value}
    if isinstance(value, dict):
        out: Dict[str, CategoryRule] = {}
        for name, opts in value.items():
            opts = opts if isinstance(opts, dict) else {}
            out[str(name)] = CategoryRule(str(name), requires_value=bool(opts.get("requires_value", True)))
        return out
    raise ValidationError("justification_categories must be a list or an object")


@dataclass(frozen=True)
class ServiceConfig:
    key_names: Tuple[str, ...] = ()
    key_rings: Tuple[str, ...] = ()
    signing_key: Optional[str] = None
    default_policy: RotationPolicy = field(
        default_factory=lambda: RotationPolicy(
            rotation_age=timedelta(days=30),
            propagation_delay=timedelta(hours=2),
            destroy_after=timedelta(days=7),
        )
    )
    policies: Dict[str, RotationPolicy] = field(default_factory=dict)
    max_token_ttl: timedelta = timedelta(hours=1)
    issuer: str = DEFAULT_ISSUER
    default_audience: str = DEFAULT_AUDIENCE
    categories: Dict[str, CategoryRule] = field(default_factory=lambda: dict(DEFAULT_CATEGORIES))
    jwks_cache_timeout: timedelta = timedelta(minutes=5)
    port: int = 8080
    audit_log_path: Optional[str] = None
    rotation_workers: int = 8
    call_timeout: timedelta = timedelta(seconds=10)
    allow_breakglass: bool = False

    def policy_for(self, key: str) -> RotationPolicy:
        return self.policies.get(key, self.default_policy)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ServiceConfig":
        """Build and validate a config from a plain mapping (file/env merged)."""
        structural = schema_problems({k: v for k, v in data.items() if v is not None})
        if structural:
            raise ConfigError("invalid configuration", problems=structural)

        merged: Dict[str, Any] = dict(DEFAULTS)
        merged.update({k: v for k, v in data.items() if v is not None})
        problems: List[str] = []

        def _get(name: str, parse):
            try:
                return parse(merged.get(name))
            except (ValidationError, ValueError, TypeError) as e:
                problems.append(f"{name}: {getattr(e, 'message', e)}")
                return None

        key_names = _get("key_names", _split_list) or ()
        key_rings = _get("key_rings", _split_list) or ()
        durations = {
            n: _get(n, parse_duration)
            for n in ("rotation_age", "propagation_delay", "destroy_after", "max_token_ttl", "jwks_cache_timeout", "call_timeout")
        }
        port = _get("port", int)
        workers = _get("rotation_workers", int)
        allow_breakglass = _get("allow_breakglass", _parse_bool)
        categories = _get("justification_categories", _parse_categories) if "justification_categories" in merged else dict(DEFAULT_CATEGORIES)

        if not key_names and not key_rings:
            problems.append("at least one of key_names or key_rings is required")
        signing_key = str(merged.get("signing_key") or "").strip() or (key_names[0] if key_names else None)
        if signing_key is None:
            problems.append("signing_key is required when only key_rings are configured")
        if port is not None and not (0 < port < 65536):
            problems.append(f"port: {port} is out of range")
        if workers is not None and workers < 1:
            problems.append("rotation_workers: must be at least 1")
        if categories is not None and not categories:
            problems.append("justification_categories: at least one category is required")
        for n in ("max_token_ttl", "jwks_cache_timeout", "call_timeout"):
            if durations[n] is not None and durations[n] <= timedelta(0):
                problems.append(f"{n}: must be a positive duration")

        default_policy = None
        policies: Dict[str, RotationPolicy] = {}
        base = {n: durations[n] for n in ("rotation_age", "propagation_delay", "destroy_after")}
        if all(v is not None for v in base.values()):
            try:
                default_policy = RotationPolicy(**base)
            except ValidationError as e:
                problems.append(f"default policy: {e.message}")
            for key, overrides in (merged.get("policies") or {}).items():
                try:
                    values = dict(base)
                    for n in values:
                        if n in overrides:
                            values[n] = parse_duration(overrides[n])
                    policies[str(key)] = RotationPolicy(**values)
                except ValidationError as e:
                    problems.append(f"policies[{key}]: {e.message}")

        max_ttl = durations["max_token_ttl"]
        if max_ttl is not None:
            checked = ([("default policy", default_policy)] if default_policy else []) + [
                (f"policies[{k}]", p) for k, p in policies.items()
            ]
            for label, p in checked:
                if p.propagation_delay < max_ttl:
                    problems.append(
                        f"{label}: propagation_delay {format_duration(p.propagation_delay)} is shorter than "
                        f"max_token_ttl {format_duration(max_ttl)}; tokens could outlive their key"
                    )

        if problems:
            raise ConfigError("invalid configuration", problems=problems)

        audit_log_path = str(merged.get("audit_log_path") or "").strip() or None
        return cls(
            key_names=key_names,
            key_rings=key_rings,
            signing_key=signing_key,
            default_policy=default_policy,
            policies=policies,
            max_token_ttl=max_ttl,
            issuer=str(merged["issuer"]),
            default_audience=str(merged["default_audience"]),
            categories=categories,
            jwks_cache_timeout=durations["jwks_cache_timeout"],
            port=port,
            audit_log_path=audit_log_path,
            rotation_workers=workers,
            call_timeout=durations["call_timeout"],
            allow_breakglass=allow_breakglass,
        )

    @classmethod
    def load_from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        raw_json = (env.get(ENV_CONFIG_JSON) or "").strip()
        file_path = (env.get(ENV_CONFIG_FILE) or "").strip()
        try:
            if raw_json:
                data = json.loads(raw_json)
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
        except (OSError, ValueError) as e:
            source = ENV_CONFIG_JSON if raw_json else file_path
            raise ConfigError(f"unable to read configuration from {source}", cause=str(e)) from e
        if not isinstance(data, dict):
            raise ConfigError("configuration document must be a JSON object")

        for name, var in ENV_OVERRIDES.items():
            value = env.get(var)
            if value is not None and value.strip():
                data[name] = value.strip()
        return cls.from_mapping(data)
