# signal_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" transport glue:
#   - It wires HTTP endpoints to the flow in flow.py.
#   - It MUST NOT implement crypto itself (keystore.py, codes.py, tokens.py).
#   - It is the only place where SafeErrors become HTTP statuses.
#
# Key modules / responsibilities:
#   - config.py        : environment-driven settings (base URLs, Signal service)
#   - identity.py      : Signal username / phone validation
#   - keystore.py      : ES256 key pairs by KID, public JWKS export
#   - sessions.py      : challenge session table + code pointer table
#   - codes.py         : authorization code sign/verify, PKCE
#   - tokens.py        : access token (JWT) minting
#   - flow.py          : the three-step state machine
#   - signal_client.py : outbound Signal message delivery
#   - audit.py         : append-only hash-chained audit log
#
# Endpoints:
#   GET  /.well-known/jwks.json             public keys
#   GET  /.well-known/openid-configuration  discovery
#   GET  /authorize                         send challenge, render code form
#   POST /verify-challenge                  code ok -> 302 to client with ?code
#   POST /oauth/token                       code + PKCE verifier -> JWT cookie
#   POST /revoke                            accepted, no effect
#
# WARNING (DEPLOYMENT):
# - Sessions and keys are in-memory: NOT shared across Uvicorn workers or
#   nodes, and lost on restart. Run a single worker.
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .audit import AuditLog
from .codes import AuthorizationCodeIssuer
from .config import Settings, settings as default_settings
from .errors import ErrorKind, SafeError
from .flow import AuthorizationFlow
from .keystore import KeyStore, SIGNING_ALGORITHM
from .sessions import SessionStore
from .signal_client import MessageChannel, SignalClient
from .tokens import TokenIssuer

logger = logging.getLogger("signal-auth")

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
async def _read_params(request: Request) -> Dict[str, Any]:
    """Accept both application/x-www-form-urlencoded and JSON bodies."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _discovery_document(s: Settings) -> Dict[str, Any]:
    issuer = s.issuer
    return {
        "issuer": issuer,
        "authorization_endpoint": issuer + "/authorize",
        "token_endpoint": issuer + "/oauth/token",
        "userinfo_endpoint": s.RESOURCE_SERVER_BASE_URL + "/userinfo",
        "end_session_endpoint": issuer + "/revoke",
        "revocation_endpoint": issuer + "/revoke",
        "jwks_uri": issuer + "/.well-known/jwks.json",
        "claims_supported": ["sub", "signal_username", "phone"],
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
    }


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    channel: Optional[MessageChannel] = None,
    keys: Optional[KeyStore] = None,
) -> FastAPI:
    s = settings or default_settings
    logger.setLevel(s.LOG_LEVEL)

    keys = keys or KeyStore()
    # at least one key pair must exist before any request is served
    keys.ensure_key_pair()

    owned_client = None
    if channel is None:
        owned_client = SignalClient(s)
        channel = owned_client

    flow = AuthorizationFlow(
        keys=keys,
        sessions=SessionStore(),
        codes=AuthorizationCodeIssuer(keys),
        tokens=TokenIssuer(keys, issuer=s.issuer, audience=s.audience, ttl_seconds=s.ACCESS_TOKEN_TTL_SECONDS),
        channel=channel,
        audit=AuditLog(s.AUDIT_DIR, enabled=s.AUDIT_ENABLED),
        challenge_code_length=s.CHALLENGE_CODE_LENGTH,
        challenge_ttl_seconds=s.CHALLENGE_TTL_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("serving with %d signing key(s), default kid=%s", len(keys), keys.default_kid)
        yield
        if owned_client is not None:
            await owned_client.aclose()

    app = FastAPI(title="Signal Auth Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = s
    app.state.keys = keys
    app.state.flow = flow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[s.CLIENT_BASE_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Error boundary
    # -------------------------------------------------------------------------
    @app.exception_handler(SafeError)
    async def safe_error_handler(request: Request, exc: SafeError):
        if exc.kind == ErrorKind.CONFIGURATION:
            logger.error("%s %s: %s (%s)", request.method, request.url.path, exc.safe_message, exc.unsafe_detail)
        elif exc.kind == ErrorKind.DELIVERY:
            logger.warning("%s %s: %s", request.method, request.url.path, exc.unsafe_detail)
        else:
            logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.name, exc.unsafe_detail)
        return JSONResponse(status_code=exc.status_code, content=exc.safe_props)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unexpected error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "internal server error"})

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------
    @app.get("/.well-known/jwks.json")
    def jwks():
        return {"keys": keys.public_key_set()}

    @app.get("/.well-known/openid-configuration")
    def openid_configuration():
        return _discovery_document(s)

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "keys": len(keys)}

    # -------------------------------------------------------------------------
    # Step 1: client redirects the user here
    # -------------------------------------------------------------------------
    @app.get("/authorize", response_class=HTMLResponse)
    async def authorize(
        request: Request,
        response_type: Optional[str] = None,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ):
        pending = await flow.request_authorization(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            request_ip=(request.client.host if request.client else None),
            user_agent=request.headers.get("user-agent"),
        )
        return templates.TemplateResponse(
            request,
            "verify_challenge.html",
            {
                "identifier": pending.identity.identifier,
                "state": pending.state,
                "code_length": pending.code_length,
            },
        )

    # -------------------------------------------------------------------------
    # Step 2: user submits the code received over Signal
    # -------------------------------------------------------------------------
    @app.post("/verify-challenge")
    async def verify_challenge(request: Request):
        params = await _read_params(request)
        location = await flow.verify_challenge(
            identifier=params.get("identifier"),
            state=params.get("state"),
            challenge_code=params.get("challenge_code"),
        )
        return RedirectResponse(location, status_code=302)

    # -------------------------------------------------------------------------
    # Step 3: client trades the code for an access token
    # -------------------------------------------------------------------------
    @app.post("/oauth/token")
    async def token(request: Request):
        params = await _read_params(request)
        client_id = params.get("client_id")
        grant = await flow.redeem(
            grant_type=params.get("grant_type"),
            code=params.get("code"),
            redirect_uri=params.get("redirect_uri"),
            client_id=client_id,
            code_verifier=params.get("code_verifier"),
        )

        response = JSONResponse(
            status_code=200,
            content={
                "signalUser": grant.identity.public_view(),
                "maxAge": grant.max_age * 1000,  # milliseconds, as cookie-parser clients expect
                "redirectTo": grant.redirect_to,
            },
        )
        response.set_cookie(
            key=f"{client_id}_at",
            value=grant.access_token,
            max_age=grant.max_age,
            path="/",
            secure=s.COOKIE_SECURE,
            httponly=True,
            samesite="lax",
        )
        return response

    @app.post("/revoke")
    async def revoke():
        # accepted and ignored: tokens stay valid until they expire
        return Response(status_code=200)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=default_settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)
