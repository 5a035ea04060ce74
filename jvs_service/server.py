"""
JVS HTTP API (FastAPI).

Endpoints:
- POST /v1/token                 issue a justification token
- POST /v1/validate              verify a token against a configured key
- GET  /.well-known/jwks         public keys of every ENABLED version
- POST /v1/rotate                rotation trigger for an external scheduler
- POST /v1/certificate-actions   manual ROTATE / FORCE_DISABLE / FORCE_DESTROY
- GET  /v1/health                liveness
- GET  /metrics                  Prometheus metrics

Errors are rendered from ``JVSError.as_dict()``. Internal and backend
failures reach the caller as opaque envelopes; details stay in server logs.
Handlers are plain ``def`` so blocking backend calls run in the threadpool.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import ApiKeyAuth, AuthContext
from .cert_actions import CertificateAction, CertificateActionKind
from .config import parse_ttl
from .errors import AggregateRotationError, JVS_E_AUTH_REQUIRED, JVS_E_INVALID_ARGUMENT, JVSError, jvs_error
from .metrics import instrument_fastapi
from .service import JVSService
from .tokens import Justification, JustificationRequest

logger = logging.getLogger("jvs_service.server")

ENV_ALLOW_ANONYMOUS_ADMIN = "JVS_ALLOW_ANONYMOUS_ADMIN"


class JustificationModel(BaseModel):
    category: str
    value: str = ""
    annotation: Dict[str, str] = Field(default_factory=dict)


class TokenRequest(BaseModel):
    justifications: List[JustificationModel] = Field(default_factory=list)
    ttl: Optional[str] = Field(None, description='Duration such as "10m"')
    ttl_seconds: Optional[float] = None
    audiences: List[str] = Field(default_factory=list)
    subject: Optional[str] = None

    def to_request(self) -> JustificationRequest:
        ttl, ttl_error = parse_ttl(self.ttl if self.ttl is not None else self.ttl_seconds)
        return JustificationRequest(
            justifications=[Justification(j.category, j.value, j.annotation) for j in self.justifications],
            ttl=ttl,
            audiences=list(self.audiences),
            subject=self.subject,
            ttl_error=ttl_error,
        )


class TokenResponse(BaseModel):
    token: str


class ValidateRequest(BaseModel):
    token: str
    key: Optional[str] = None


class ValidateResponse(BaseModel):
    valid: bool
    claims: Dict[str, Any]


class CertificateActionModel(BaseModel):
    version: str
    action: CertificateActionKind
    reason: str = ""


class CertificateActionsRequest(BaseModel):
    actions: List[CertificateActionModel]


def _env_bool(name: str) -> bool:
    return (os.getenv(name, "") or "").strip().lower() in ("1", "true", "yes", "on")


def create_app(service: Optional[JVSService] = None) -> FastAPI:
    """Create the FastAPI application. Builds the service from env if not given."""
    from . import __version__ as jvs_version

    if service is None:
        service = JVSService.from_env()

    app = FastAPI(
        title="Justification Verification Service",
        description="Signed justification tokens backed by rotating KMS keys",
        version=jvs_version,
    )
    app.state.service = service

    @app.exception_handler(JVSError)
    async def _jvs_error_handler(request: Request, exc: JVSError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.as_dict())
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    api_auth = ApiKeyAuth.load_from_env()
    allow_anonymous_admin = _env_bool(ENV_ALLOW_ANONYMOUS_ADMIN)

    def _caller(x_api_key: Optional[str], *, admin: bool) -> AuthContext:
        ctx = api_auth.resolve_context(x_api_key)
        if ctx.error:
            raise jvs_error(JVS_E_AUTH_REQUIRED, ctx.error, http_status=401)
        if admin and not ctx.authenticated and not allow_anonymous_admin:
            raise jvs_error(JVS_E_AUTH_REQUIRED, "authenticated caller required", http_status=401)
        return ctx

    def _authorize_metrics(req: Request) -> bool:
        token = (os.getenv("JVS_METRICS_TOKEN", "") or "").strip()
        if not token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        return authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token

    instrument_fastapi(app, authorize=_authorize_metrics)

    @app.post("/v1/token", response_model=TokenResponse)
    def create_token(body: TokenRequest, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        """Validate the justifications and return a signed token."""
        ctx = _caller(x_api_key, admin=False)
        token = service.pipeline.create_token(body.to_request(), requestor=ctx.principal)
        return TokenResponse(token=token)

    @app.post("/v1/validate", response_model=ValidateResponse)
    def validate_token(body: ValidateRequest):
        key = body.key or service.config.signing_key
        if key not in service.config.key_names and key != service.config.signing_key:
            raise jvs_error(JVS_E_INVALID_ARGUMENT, f"{key} is not a configured key", key=key)
        claims = service.verifier.verify_token(key, body.token)
        return ValidateResponse(valid=True, claims=claims)

    @app.get("/.well-known/jwks")
    def jwks():
        return JSONResponse(content=service.publisher.jwks(), headers={"Cache-Control": "public, max-age=60"})

    @app.post("/v1/rotate")
    def rotate(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        """Rotate every configured key; 500 with per-key failures if any key failed."""
        _caller(x_api_key, admin=True)
        report = service.rotate_all()
        if report.ok:
            return report.as_dict()
        body = AggregateRotationError(report.failures).as_dict()
        body["report"] = report.as_dict()
        return JSONResponse(status_code=500, content=body)

    @app.post("/v1/certificate-actions")
    def certificate_actions(body: CertificateActionsRequest, x_api_key: Optional[str] = Header(None, alias="X-Api-Key")):
        ctx = _caller(x_api_key, admin=True)
        try:
            results = service.cert_actions.apply(
                [CertificateAction(a.version, a.action, a.reason) for a in body.actions],
                actor=ctx.principal or "anonymous",
            )
        finally:
            # Actions applied before a failing one stay applied.
            service.publisher.invalidate()
        return {"results": [r.as_dict() for r in results]}

    @app.get("/v1/health")
    def health_check():
        return {
            "status": "healthy",
            "version": jvs_version,
            "keys": len(service.config.key_names),
            "key_rings": len(service.config.key_rings),
        }

    return app


def main():
    """
    Entry point for jvs-server.

    Usage:
        jvs-server                    # Start on JVS_PORT (default 8080)
        jvs-server --port 9000        # Start on custom port
        jvs-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Justification Verification Service API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    JVS_CONFIG_FILE / JVS_CONFIG_JSON   Service configuration document
    JVS_KEY_NAMES / JVS_KEY_RINGS       Managed keys (comma-separated)
    JVS_BACKEND                         gcp (default) or memory
    JVS_API_KEYS_JSON / _FILE           API key -> principal mapping
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (default: config port)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    service = JVSService.from_env()
    app = create_app(service)
    port = args.port or service.config.port
    logger.info("starting JVS API on %s:%d", args.host, port)
    uvicorn.run(app, host=args.host, port=port)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
