from __future__ import annotations

import html
import logging
from typing import Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from ..deps import get_caller
from ..errors import ErrorKind, MediatorError
from ..mediator import AuthorizationMediator, failure_message
from ..models import PollStatus
from ..schemas import FailedResponse, PendingResponse, RegCodeResponse, TokenResponse

router = APIRouter(tags=["provision"])
log = logging.getLogger("companion.provision")

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>{html.escape(title)}</title>
</head>
<body style="font-family: system-ui; margin:0; padding:24px;">
  <h1 style="font-size:20px;">{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
</body>
</html>
"""
    return HTMLResponse(content=body, status_code=status_code, headers=NO_STORE)


def _error_page(err: MediatorError) -> HTMLResponse:
    return _page("Device registration failed", err.message, status_code=err.status_code)


# ---------------------------------------------------------------------
# Device endpoints (client certificate required)
# ---------------------------------------------------------------------

@router.get("/provision/regCode")
async def reg_code(request: Request, productId: str = "", dsn: str = "") -> Response:
    """The endpoint for the device to request a registration code to show to the user."""
    mediator: AuthorizationMediator = request.app.state.mediator
    issued = await mediator.issue_registration_code(productId, dsn, caller=get_caller(request))

    payload = RegCodeResponse(
        code=issued.code,
        session_id=issued.session_id,
        expires_in=issued.expires_in,
        verification_uri=issued.verification_uri,
        interval=issued.interval,
    )
    return JSONResponse(payload.model_dump(by_alias=True))


@router.get("/provision/accessToken")
async def access_token(request: Request, sessionId: str = "") -> Response:
    """The endpoint the device polls until the user has logged in."""
    mediator: AuthorizationMediator = request.app.state.mediator
    result = await mediator.poll_access_token(sessionId, caller=get_caller(request))

    if result.status is PollStatus.AUTHORIZATION_PENDING:
        return JSONResponse(PendingResponse(interval=result.interval).model_dump(by_alias=True))

    if result.status is PollStatus.FAILED:
        failed = FailedResponse(
            error=ErrorKind.IDP_EXCHANGE_FAILED.value,
            message=failure_message(result.failure_reason),
        )
        return JSONResponse(failed.model_dump(by_alias=True), headers=NO_STORE)

    tokens = TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        token_type=result.token_type or "bearer",
    )
    return JSONResponse(tokens.model_dump(by_alias=True, exclude_none=True), headers=NO_STORE)


# ---------------------------------------------------------------------
# Browser endpoints
# ---------------------------------------------------------------------

@router.get("/provision/{code}")
async def begin(request: Request, code: str) -> Response:
    """The URL the user visits; redirects the browser to the identity provider's login."""
    mediator: AuthorizationMediator = request.app.state.mediator
    try:
        url = await mediator.begin_browser_authorization(code)
    except MediatorError as e:
        log.info("[begin] rejected code=%s error=%s", code, e.kind.value)
        return _error_page(e)
    return RedirectResponse(url, status_code=302)


@router.get("/authresponse")
async def authresponse(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> Response:
    """Where the identity provider sends the browser back with the authorization code."""
    mediator: AuthorizationMediator = request.app.state.mediator
    try:
        await mediator.handle_idp_callback(code, state, error=error)
    except MediatorError as e:
        log.info("[authresponse] rejected error=%s", e.kind.value)
        return _error_page(e)

    return _page(
        "Device registered",
        "Your device is now authorized. You can close this window and return to your device.",
    )
