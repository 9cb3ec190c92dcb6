# signal_auth/flow.py
#
# -----------------------------------------------------------------------------
# Authorization flow (three steps, one state machine per session)
# -----------------------------------------------------------------------------
#   1. request_authorization   (none -> PENDING_CHALLENGE)
#        client redirects the user here; we send a numeric challenge code to
#        the user's Signal identity and render a form to type it back.
#   2. verify_challenge        (PENDING_CHALLENGE -> CODE_ISSUED)
#        the code matches; we sign an authorization code and redirect the
#        user back to the client with ?code=...&state=...
#   3. redeem                  (CODE_ISSUED -> REDEEMED, session deleted)
#        the client proves PKCE possession and trades the code for a JWT.
#
# Atomicity:
#   - step 1 inserts the session with the store's insert-if-absent primitive
#     BEFORE awaiting the Signal send, so two racing requests for one session
#     key cannot both pass the replay check
#   - steps 2 and 3 run entirely under the store lock, so one session yields
#     at most one authorization code and one code yields at most one token
#
# This module raises SafeError subclasses only; translating them to HTTP
# statuses is the transport's job (main.py).
# -----------------------------------------------------------------------------

import hmac
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .audit import AuditLog, build_common
from .codes import AuthorizationCodeIssuer, verify_pkce
from .errors import (
    AuthorizationCodeSignatureError,
    ChallengeDeliveryError,
    ChallengeMismatchError,
    OAuth2ValidationError,
    SessionNotFoundError,
)
from .identity import Identity, validate_identity
from .keystore import KeyStore
from .sessions import ChallengeSession, SessionStatus, SessionStore, session_key
from .signal_client import MessageChannel, MessageDeliveryError
from .tokens import TokenIssuer

logger = logging.getLogger("signal-auth")

# client_id names the access-token cookie (`{client_id}_at`), so it must be a
# legal cookie-name token
CLIENT_ID_RE = re.compile(r"[A-Za-z0-9!#$%&'*+\-.^_`|~]{1,128}", re.ASCII)


def generate_challenge_code(length: int) -> str:
    """`length` digits, each uniformly random in 0-9."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def _append_query(url: str, **params: str) -> str:
    p = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunparse(p._replace(query=urlencode(query)))


def _check_client_id(client_id: Optional[str]) -> str:
    if not client_id:
        raise OAuth2ValidationError("client_id is required")
    if not isinstance(client_id, str) or not CLIENT_ID_RE.fullmatch(client_id):
        raise OAuth2ValidationError("client_id contains illegal characters", f"client_id={client_id!r}")
    return client_id


def _check_redirect_uri(redirect_uri: Optional[str]) -> str:
    p = urlparse(redirect_uri or "")
    if p.scheme not in ("http", "https") or not p.netloc:
        raise OAuth2ValidationError("redirect_uri must be an absolute http(s) URL")
    return str(redirect_uri)


def _parse_scope(scope: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(scope or "")
    except (TypeError, ValueError):
        raise OAuth2ValidationError(
            "scope must be a JSON object",
            f"scope={scope!r}",
        )
    if not isinstance(parsed, dict):
        raise OAuth2ValidationError("scope must be a JSON object", f"scope={scope!r}")
    return parsed


@dataclass(frozen=True)
class PendingChallenge:
    identity: Identity
    state: str
    code_length: int


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    identity: Identity
    max_age: int  # seconds
    redirect_to: Optional[str]


class AuthorizationFlow:
    def __init__(
        self,
        keys: KeyStore,
        sessions: SessionStore,
        codes: AuthorizationCodeIssuer,
        tokens: TokenIssuer,
        channel: MessageChannel,
        audit: AuditLog,
        challenge_code_length: int = 6,
        challenge_ttl_seconds: int = 300,
    ):
        self.keys = keys
        self.sessions = sessions
        self.codes = codes
        self.tokens = tokens
        self.channel = channel
        self.audit = audit
        self.challenge_code_length = challenge_code_length
        self.challenge_ttl_seconds = challenge_ttl_seconds

    def _resolve_kid(self, kid: Any) -> str:
        if kid is None or kid == "":
            return self.keys.default_kid
        if not isinstance(kid, str) or kid not in self.keys:
            raise OAuth2ValidationError("unknown kid", f"kid={kid!r}")
        return kid

    # -------------------------------------------------------------------------
    # Step 1
    # -------------------------------------------------------------------------
    async def request_authorization(
        self,
        *,
        response_type: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        scope: Optional[str],
        state: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PendingChallenge:
        if response_type != "code":
            raise OAuth2ValidationError('response_type must be "code"')
        if code_challenge_method != "S256":
            raise OAuth2ValidationError('code_challenge_method must be "S256"')
        client_id = _check_client_id(client_id)
        if not state:
            raise OAuth2ValidationError("state is required")
        if not code_challenge:
            raise OAuth2ValidationError("code_challenge is required")
        redirect_uri = _check_redirect_uri(redirect_uri)

        requested = _parse_scope(scope)
        identity = validate_identity(
            username=requested.get("signal_username"),
            phone=requested.get("phone"),
        )
        kid = self._resolve_kid(requested.get("kid"))

        key = session_key(identity.identifier, state)
        challenge_code = generate_challenge_code(self.challenge_code_length)
        now = int(time.time())

        await self.sessions.create(
            key,
            ChallengeSession(
                session_key=key,
                kid=kid,
                identity=identity,
                client_id=client_id,
                redirect_uri=redirect_uri,
                state=state,
                code_challenge=code_challenge,
                challenge_code=challenge_code,
                created_at=now,
                expires_at=now + self.challenge_ttl_seconds,
            ),
        )

        common = build_common(
            event="challenge_sent",
            identifier=identity.identifier,
            client_id=client_id,
            kid=kid,
            state=state,
            request_ip=request_ip,
            user_agent=user_agent,
        )
        delivered = False
        try:
            await self.channel.send(challenge_code, [identity.identifier])
            delivered = True
        except MessageDeliveryError as e:
            self.audit.append({**common, "event": "challenge_failed", "result": "error"})
            raise ChallengeDeliveryError(str(e)) from e
        finally:
            # an undelivered challenge must not block a retry with the same state
            if not delivered:
                self.sessions.discard(key)

        self.audit.append({**common, "result": "pending"})
        logger.info("challenge sent client_id=%s kid=%s", client_id, kid)
        return PendingChallenge(identity=identity, state=state, code_length=self.challenge_code_length)

    # -------------------------------------------------------------------------
    # Step 2
    # -------------------------------------------------------------------------
    async def verify_challenge(
        self,
        *,
        identifier: Optional[str],
        state: Optional[str],
        challenge_code: Optional[str],
    ) -> str:
        """Returns the client redirect URL carrying the authorization code."""
        identifier = str(identifier or "")
        state = str(state or "")
        key = session_key(identifier, state)

        async with self.sessions.lock:
            sess = self.sessions.find(key)
            submitted = str(challenge_code or "").encode("utf-8")

            if sess is None or sess.status != SessionStatus.PENDING_CHALLENGE:
                reason = "no_pending_session"
            elif sess.is_expired:
                reason = "expired"
                self.sessions.discard(key)
            elif not hmac.compare_digest(submitted, sess.challenge_code.encode("utf-8")):
                reason = "challenge_mismatch"
            else:
                reason = None

            if reason is not None:
                self.audit.append(
                    {
                        **build_common(event="challenge_verified", identifier=identifier, state=state),
                        "result": "denied",
                        "reason": reason,
                    }
                )
                raise ChallengeMismatchError("Invalid session", reason)

            code = self.codes.issue(sess.identity, sess.kid)
            self.sessions.promote(key, code)

        self.audit.append(
            {
                **build_common(
                    event="code_issued",
                    identifier=sess.identity.identifier,
                    client_id=sess.client_id,
                    kid=sess.kid,
                    state=sess.state,
                    code=code,
                ),
                "result": "approved",
            }
        )
        return _append_query(sess.redirect_uri, code=code, state=sess.state)

    # -------------------------------------------------------------------------
    # Step 3
    # -------------------------------------------------------------------------
    async def redeem(
        self,
        *,
        grant_type: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        client_id: Optional[str],
        code_verifier: Optional[str],
    ) -> TokenGrant:
        if grant_type != "authorization_code":
            raise OAuth2ValidationError('grant_type must be "authorization_code"')
        client_id = _check_client_id(client_id)
        if not code:
            raise SessionNotFoundError("Unknown authorization code", "empty code")
        code = str(code)

        async with self.sessions.lock:
            key = self.sessions.resolve_pointer(code)
            sess = self.sessions.get(key)

            if not verify_pkce(str(code_verifier or ""), sess.code_challenge):
                self._audit_redeem(sess, code, "denied", "pkce_mismatch")
                raise OAuth2ValidationError("code_challenge did not match code_verifier")

            if not self.codes.verify(sess.identity, sess.kid, code):
                self._audit_redeem(sess, code, "denied", "invalid_signature")
                raise AuthorizationCodeSignatureError(f"signature check failed for kid {sess.kid!r}")

            access_token = self.tokens.issue(sess.identity, sess.kid)
            self.sessions.consume(key)

        self._audit_redeem(sess, code, "approved", "token_issued")
        logger.info("token issued client_id=%s kid=%s", client_id, sess.kid)
        return TokenGrant(
            access_token=access_token,
            identity=sess.identity,
            max_age=self.tokens.ttl_seconds,
            redirect_to=redirect_uri,
        )

    def _audit_redeem(self, sess: ChallengeSession, code: str, result: str, reason: str) -> None:
        self.audit.append(
            {
                **build_common(
                    event="code_redeemed",
                    identifier=sess.identity.identifier,
                    client_id=sess.client_id,
                    kid=sess.kid,
                    code=code,
                ),
                "result": result,
                "reason": reason,
            }
        )
