from __future__ import annotations

from fastapi import Request

from .models import CallerIdentity
from .settings import Settings


def get_caller(request: Request) -> CallerIdentity:
    """
    Device identity as asserted by the TLS-terminating proxy.

    The proxy verifies the client certificate and forwards the outcome; this
    service never sees the certificate itself.
    """
    settings: Settings = request.app.state.settings
    verify = (request.headers.get(settings.CLIENT_VERIFY_HEADER) or "").strip()
    subject = (request.headers.get(settings.CLIENT_SUBJECT_HEADER) or "").strip() or None
    return CallerIdentity(authenticated=verify == settings.CLIENT_VERIFY_SUCCESS, subject=subject)
