from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Callable, Dict, List, Optional

from .code_store import InMemoryCodeStore
from .errors import ErrorKind, IdPError, MediatorError, not_found, unauthorized
from .idp_client import IdPClient, code_challenge_s256, generate_code_verifier
from .models import (
    CallerIdentity,
    IssuedCode,
    PollResult,
    PollStatus,
    RegistrationCode,
    Session,
    SessionStatus,
    TokenGrant,
)
from .session_store import InMemorySessionStore
from .settings import Settings

log = logging.getLogger("companion.mediator")

# No 0/O or 1/I so codes survive being read off a small display
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_CODE_ATTEMPTS = 10

FAILURE_MESSAGES = {
    "idp_exchange_failed": "The identity provider did not issue a token. Request a new code on your device and try again.",
    "access_denied": "Login was cancelled or access was denied. Request a new code on your device and try again.",
    "missing_code": "The identity provider did not return an authorization code. Request a new code on your device.",
}


def generate_reg_code(length: int = 6) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def failure_message(reason: Optional[str]) -> str:
    return FAILURE_MESSAGES.get(reason or "", "Authorization failed. Request a new code on your device and try again.")


class AuthorizationMediator:
    """
    Drives a session through pending -> authorized | failed | expired.

    Stores are only touched through their atomic operations, and no store lock
    is held while the identity provider is being called: the callback claims the
    state nonce, performs the exchange, then writes the outcome only if the
    session is still pending.
    """
    def __init__(
        self,
        *,
        codes: InMemoryCodeStore,
        sessions: InMemorySessionStore,
        idp: IdPClient,
        redirect_uri: str,
        verification_url: Callable[[str], str],
        code_ttl: int = 600,
        session_ttl: int = 900,
        poll_interval: int = 5,
        code_length: int = 6,
        products: Optional[Dict[str, List[str]]] = None,
        use_pkce: bool = True,
        refresh_on_poll: bool = True,
        refresh_skew: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codes = codes
        self.sessions = sessions
        self.idp = idp
        self.redirect_uri = redirect_uri
        self.verification_url = verification_url
        self.code_ttl = code_ttl
        self.session_ttl = session_ttl
        self.poll_interval = poll_interval
        self.code_length = code_length
        self.products = products or {}
        self.use_pkce = use_pkce
        self.refresh_on_poll = refresh_on_poll
        self.refresh_skew = refresh_skew
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        idp: Optional[IdPClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> "AuthorizationMediator":
        return cls(
            codes=InMemoryCodeStore(clock=clock),
            sessions=InMemorySessionStore(clock=clock),
            idp=idp or IdPClient.from_settings(settings),
            redirect_uri=settings.callback_url,
            verification_url=settings.verification_url,
            code_ttl=settings.CODE_TTL_SECONDS,
            session_ttl=settings.SESSION_TTL_SECONDS,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            code_length=settings.REG_CODE_LENGTH,
            products=settings.PRODUCTS,
            use_pkce=settings.IDP_USE_PKCE,
            refresh_on_poll=settings.REFRESH_ON_POLL,
            refresh_skew=settings.TOKEN_REFRESH_SKEW_SECONDS,
            clock=clock,
        )

    # -----------------------------------------------------------------
    # Device: registration code
    # -----------------------------------------------------------------

    def _check_device(self, product_id: str, device_serial: str) -> None:
        if not product_id or not device_serial:
            raise MediatorError(ErrorKind.INVALID_REQUEST, "productId and dsn are required.")
        if not self.products:
            return
        if device_serial not in self.products.get(product_id, []):
            raise MediatorError(
                ErrorKind.INVALID_REQUEST,
                "The provided productId and dsn do not match a registered device.",
            )

    async def issue_registration_code(
        self,
        product_id: str,
        device_serial: str,
        *,
        caller: CallerIdentity,
    ) -> IssuedCode:
        if not caller.authenticated:
            raise unauthorized()
        self._check_device(product_id, device_serial)

        now = self._clock()
        session = Session(
            session_id=uuid.uuid4().hex,
            state_nonce=secrets.token_urlsafe(32),
            product_id=product_id,
            device_serial=device_serial,
            owner=caller.subject,
            code_verifier=generate_code_verifier() if self.use_pkce else None,
            created_at=now,
            expires_at=now + self.session_ttl,
        )

        # The session is stored only once its code is allocated; the code is not
        # handed out before this returns, so nothing can look it up early.
        for _ in range(_CODE_ATTEMPTS):
            entry = RegistrationCode(
                code=generate_reg_code(self.code_length),
                product_id=product_id,
                device_serial=device_serial,
                session_id=session.session_id,
                created_at=now,
                expires_at=now + self.code_ttl,
            )
            if await self.codes.put(entry):
                break
        else:
            log.error("reg code space exhausted attempts=%s length=%s", _CODE_ATTEMPTS, self.code_length)
            raise MediatorError(ErrorKind.INTERNAL, "Could not allocate a registration code. Try again later.")

        await self.sessions.put(session)

        log.info(
            "issued code=%s sid=%s product=%s dsn=%s owner=%s",
            entry.code,
            session.session_id,
            product_id,
            device_serial,
            caller.subject,
        )
        return IssuedCode(
            code=entry.code,
            session_id=session.session_id,
            expires_in=self.code_ttl,
            verification_uri=self.verification_url(entry.code),
            interval=self.poll_interval,
        )

    # -----------------------------------------------------------------
    # Browser: redirect to the IdP
    # -----------------------------------------------------------------

    async def begin_browser_authorization(self, code: str) -> str:
        entry = await self.codes.mark_consumed((code or "").strip().upper())
        session = await self.sessions.get(entry.session_id)
        if session.status is not SessionStatus.PENDING:
            raise MediatorError(ErrorKind.INVALID_SESSION_STATE, "This authorization request has already completed.")

        url = self.idp.build_authorize_url(
            session.state_nonce,
            self.redirect_uri,
            code_challenge=code_challenge_s256(session.code_verifier) if session.code_verifier else None,
            product_id=session.product_id,
            device_serial=session.device_serial,
        )
        log.info("browser redirect code=%s sid=%s", entry.code, session.session_id)
        return url

    # -----------------------------------------------------------------
    # Browser: IdP callback
    # -----------------------------------------------------------------

    async def handle_idp_callback(
        self,
        authorization_code: Optional[str],
        returned_state: Optional[str],
        *,
        error: Optional[str] = None,
    ) -> Session:
        session = await self.sessions.find_by_nonce(returned_state or "")
        sid = session.session_id

        def claim(s: Session) -> Session:
            if s.status is not SessionStatus.PENDING or s.nonce_used:
                raise MediatorError(
                    ErrorKind.INVALID_SESSION_STATE,
                    "This authorization response was already processed.",
                )
            s.nonce_used = True
            return s

        claimed = await self.sessions.update_status(sid, claim)

        if error or not authorization_code:
            if error == "access_denied":
                reason = "access_denied"
            elif error:
                reason = "idp_exchange_failed"
            else:
                reason = "missing_code"
            log.warning("callback without code sid=%s idp_error=%s", sid, error)
            await self._finish(sid, lambda s: _fail(s, reason))
            raise MediatorError(ErrorKind.IDP_EXCHANGE_FAILED, failure_message(reason))

        try:
            grant = await self.idp.exchange_code(
                authorization_code,
                self.redirect_uri,
                code_verifier=claimed.code_verifier,
            )
        except IdPError as e:
            log.warning("code exchange failed sid=%s reason=%s idp_status=%s", sid, e.reason, e.status_code)
            await self._finish(sid, lambda s: _fail(s, "idp_exchange_failed"))
            raise MediatorError(ErrorKind.IDP_EXCHANGE_FAILED, failure_message("idp_exchange_failed")) from e

        now = self._clock()
        updated = await self._finish(sid, lambda s: _authorize(s, grant, now))
        log.info("session authorized sid=%s", sid)
        return updated

    async def _finish(self, session_id: str, transition: Callable[[Session], Session]) -> Session:
        try:
            return await self.sessions.update_status(session_id, transition)
        except MediatorError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                log.warning("session expired during exchange sid=%s", session_id)
            raise

    # -----------------------------------------------------------------
    # Device: poll
    # -----------------------------------------------------------------

    async def poll_access_token(self, session_id: str, *, caller: CallerIdentity) -> PollResult:
        if not caller.authenticated:
            raise unauthorized()
        if not session_id:
            raise MediatorError(ErrorKind.INVALID_REQUEST, "sessionId is required.")

        session = await self.sessions.get(session_id)
        if session.owner and session.owner != caller.subject:
            log.warning("poll owner mismatch sid=%s caller=%s", session_id, caller.subject)
            raise not_found()

        if session.status is SessionStatus.PENDING:
            return PollResult(status=PollStatus.AUTHORIZATION_PENDING, interval=self.poll_interval)

        if session.status is SessionStatus.FAILED:
            return PollResult(status=PollStatus.FAILED, failure_reason=session.failure_reason)

        if session.status is SessionStatus.AUTHORIZED:
            if self._needs_refresh(session):
                session = await self._refresh(session)
            return self._token_result(session)

        raise not_found()

    def _needs_refresh(self, session: Session) -> bool:
        if not self.refresh_on_poll or not session.refresh_token or session.token_expires_at is None:
            return False
        return session.token_expires_at - self.refresh_skew <= self._clock()

    async def _refresh(self, session: Session) -> Session:
        old_refresh = session.refresh_token
        try:
            grant = await self.idp.refresh(old_refresh)
        except IdPError as e:
            log.warning("token refresh failed sid=%s reason=%s idp_status=%s", session.session_id, e.reason, e.status_code)
            raise MediatorError(
                ErrorKind.IDP_EXCHANGE_FAILED,
                "The identity provider did not refresh the token. Retry later.",
            ) from e

        now = self._clock()

        def store_grant(s: Session) -> Session:
            # Another poll may have refreshed first; keep whichever grant landed first.
            if s.status is SessionStatus.AUTHORIZED and s.refresh_token == old_refresh:
                s.authorize(grant, now)
            return s

        updated = await self.sessions.update_status(session.session_id, store_grant)
        log.info("session token refreshed sid=%s", session.session_id)
        return updated

    def _token_result(self, session: Session) -> PollResult:
        expires_in = None
        if session.token_expires_at is not None:
            expires_in = max(0, int(session.token_expires_at - self._clock()))
        return PollResult(
            status=PollStatus.AUTHORIZED,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_in=expires_in,
            token_type=session.token_type,
        )

    # -----------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------

    async def purge_expired(self) -> Dict[str, int]:
        return {
            "codes": await self.codes.purge_expired(),
            "sessions": await self.sessions.purge_expired(),
        }


def _authorize(s: Session, grant: TokenGrant, now: float) -> Session:
    if s.status is not SessionStatus.PENDING:
        raise MediatorError(ErrorKind.INVALID_SESSION_STATE, "This authorization request has already completed.")
    s.authorize(grant, now)
    return s


def _fail(s: Session, reason: str) -> Session:
    if s.status is not SessionStatus.PENDING:
        raise MediatorError(ErrorKind.INVALID_SESSION_STATE, "This authorization request has already completed.")
    s.fail(reason)
    return s
