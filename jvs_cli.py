#!/usr/bin/env python3
"""
Justification Verification Service - Command Line Interface

Usage:
    jvs rotate                                   Rotate every configured key / key ring
    jvs token --explanation TEXT [--ttl 10m]     Issue a justification token
    jvs token --breakglass --explanation TEXT    Issue a breakglass token without the backend
    jvs validate --token TOKEN [--jwks-url URL]  Verify a token (locally or against a JWKS endpoint)
    jvs cert-action --version NAME --action A    ROTATE | FORCE_DISABLE | FORCE_DESTROY a key version
    jvs public-keys                              Print the JWK Set of all enabled versions
    jvs verify-audit <path>                      Check the hash chain of an audit log

Configuration is read from the same JVS_* environment variables as the server.
"""

import argparse
import getpass
import json
import logging
import sys
from typing import List, Optional

import jwt

from jvs_service.audit_log import AuditLog
from jvs_service.breakglass import BREAKGLASS_CATEGORY, create_breakglass_token, is_breakglass_token, parse_breakglass_token
from jvs_service.cert_actions import CertificateAction, CertificateActionKind
from jvs_service.config import parse_ttl
from jvs_service.crypto import _now_utc
from jvs_service.errors import JVSError, SignatureInvalid
from jvs_service.service import JVSService
from jvs_service.tokens import Justification, JustificationRequest
from jvs_service.verification import TokenVerifier, check_token_times

logger = logging.getLogger("jvs_service.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )


def build_service(args) -> JVSService:
    return JVSService.from_env()


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_rotate(args) -> int:
    """Rotate all configured keys; non-zero exit if any key failed."""
    report = build_service(args).rotate_all()
    _print_json(report.as_dict())
    return 0 if report.ok else 1


def cmd_token(args) -> int:
    category = BREAKGLASS_CATEGORY if args.breakglass else "explanation"
    ttl, ttl_error = parse_ttl(args.ttl)
    request = JustificationRequest(
        justifications=[Justification(category, text) for text in args.explanation],
        ttl=ttl,
        audiences=list(args.aud or []),
        subject=args.sub,
        ttl_error=ttl_error,
    )
    requestor = args.sub or getpass.getuser()
    if args.breakglass:
        token = create_breakglass_token(request, requestor=requestor)
    else:
        token = build_service(args).pipeline.create_token(request, requestor=requestor)
    print(token)
    return 0


def cmd_validate(args) -> int:
    if args.jwks_url and is_breakglass_token(args.token):
        if not args.allow_breakglass:
            raise SignatureInvalid("breakglass tokens are not accepted")
        claims = parse_breakglass_token(args.token)
        check_token_times(claims, _now_utc())
    elif args.jwks_url:
        client = jwt.PyJWKClient(args.jwks_url)
        signing_key = client.get_signing_key_from_jwt(args.token)
        claims = jwt.decode(
            args.token,
            signing_key.key,
            algorithms=["ES256", "ES384", "ES512"],
            audience=args.aud,
            options={"verify_aud": bool(args.aud)},
        )
    else:
        service = build_service(args)
        verifier = service.verifier
        if args.allow_breakglass:
            verifier = TokenVerifier(service.engine, allow_breakglass=True)
        claims = verifier.verify_token(args.key or service.config.signing_key, args.token)
    _print_json(claims)
    return 0


def cmd_cert_action(args) -> int:
    service = build_service(args)
    results = service.cert_actions.apply(
        [CertificateAction(v, CertificateActionKind(args.action), args.reason) for v in args.version],
        actor=args.actor or getpass.getuser(),
    )
    _print_json([r.as_dict() for r in results])
    return 0


def cmd_public_keys(args) -> int:
    _print_json(build_service(args).publisher.build())
    return 0


def cmd_verify_audit(args) -> int:
    ok, reason, count = AuditLog.verify_file(args.path)
    print(f"{'OK' if ok else 'FAILED'}: {reason} ({count} records)")
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Justification Verification Service CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    rotate_parser = subparsers.add_parser("rotate", help="Rotate all configured keys")
    rotate_parser.set_defaults(func=cmd_rotate)

    token_parser = subparsers.add_parser("token", help="Issue a justification token")
    token_parser.add_argument("--explanation", action="append", required=True, help="Reason for access (repeatable)")
    token_parser.add_argument("--ttl", default="15m", help="Token lifetime (default: 15m)")
    token_parser.add_argument("--aud", action="append", help="Audience (repeatable)")
    token_parser.add_argument("--sub", help="Subject (default: current user)")
    token_parser.add_argument(
        "--breakglass", action="store_true", help="Mint an HMAC breakglass token locally, for when KMS is unavailable"
    )
    token_parser.set_defaults(func=cmd_token)

    validate_parser = subparsers.add_parser("validate", help="Verify a token")
    validate_parser.add_argument("--token", required=True)
    validate_parser.add_argument("--jwks-url", help="Verify against a published JWK Set instead of the backend")
    validate_parser.add_argument("--key", help="Key to verify against (default: signing key)")
    validate_parser.add_argument("--aud", help="Expected audience (JWKS mode)")
    validate_parser.add_argument("--allow-breakglass", action="store_true", help="Accept breakglass tokens")
    validate_parser.set_defaults(func=cmd_validate)

    cert_parser = subparsers.add_parser("cert-action", help="Manual key version action")
    cert_parser.add_argument("--version", action="append", required=True, help="Key version name (repeatable)")
    cert_parser.add_argument("--action", required=True, choices=[k.value for k in CertificateActionKind])
    cert_parser.add_argument("--reason", required=True, help="Why; recorded in the audit log")
    cert_parser.add_argument("--actor", help="Who (default: current user)")
    cert_parser.set_defaults(func=cmd_cert_action)

    keys_parser = subparsers.add_parser("public-keys", help="Print the JWK Set")
    keys_parser.set_defaults(func=cmd_public_keys)

    audit_parser = subparsers.add_parser("verify-audit", help="Verify an audit log hash chain")
    audit_parser.add_argument("path")
    audit_parser.set_defaults(func=cmd_verify_audit)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except JVSError as e:
        print(json.dumps(e.as_dict(), sort_keys=True), file=sys.stderr)
        return 2
    except jwt.PyJWTError as e:
        print(f"token rejected: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
