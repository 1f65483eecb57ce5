from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Dict, Optional

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from .errors import IdPError
from .models import TokenGrant
from .settings import Settings

log = logging.getLogger("companion.idp")


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(48)


def code_challenge_s256(verifier: str) -> str:
    return create_s256_code_challenge(verifier)


def _grant_from_token(token: Dict[str, Any], *, fallback_refresh: Optional[str] = None) -> TokenGrant:
    access_token = token.get("access_token")
    if not access_token:
        raise IdPError("token response carried no access_token")

    expires_in = token.get("expires_in")
    return TokenGrant(
        access_token=access_token,
        refresh_token=token.get("refresh_token") or fallback_refresh,
        expires_in=int(expires_in) if expires_in is not None else None,
        token_type=token.get("token_type") or "bearer",
    )


class IdPClient:
    """
    Outbound client for the identity provider's authorize and token endpoints.

    Holds configuration only. Every token request opens its own authlib
    client and closes it afterwards, so nothing leaks between calls.
    """
    def __init__(
        self,
        *,
        authorize_url: str,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        scope_data_key: Optional[str] = None,
        token_auth_method: str = "client_secret_post",
        timeout: float = 10.0,
    ) -> None:
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.scope_data_key = scope_data_key
        self.token_auth_method = token_auth_method
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdPClient":
        return cls(
            authorize_url=str(settings.IDP_AUTHORIZE_URL),
            token_url=str(settings.IDP_TOKEN_URL),
            client_id=settings.IDP_CLIENT_ID,
            client_secret=settings.IDP_CLIENT_SECRET,
            scope=settings.IDP_SCOPE,
            scope_data_key=settings.IDP_SCOPE_DATA_KEY,
            token_auth_method=settings.IDP_TOKEN_AUTH_METHOD,
            timeout=settings.IDP_TIMEOUT_SECONDS,
        )

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_endpoint_auth_method=self.token_auth_method,
            timeout=self.timeout,
        )

    def build_authorize_url(
        self,
        state_nonce: str,
        redirect_uri: str,
        *,
        code_challenge: Optional[str] = None,
        product_id: Optional[str] = None,
        device_serial: Optional[str] = None,
    ) -> str:
        extra: Dict[str, str] = {}
        if code_challenge:
            extra["code_challenge"] = code_challenge
            extra["code_challenge_method"] = "S256"
        if self.scope_data_key and product_id:
            scope_data = {
                self.scope_data_key: {
                    "productID": product_id,
                    "productInstanceAttributes": {"deviceSerialNumber": device_serial},
                }
            }
            extra["scope_data"] = json.dumps(scope_data, separators=(",", ":"))

        return prepare_grant_uri(
            self.authorize_url,
            self.client_id,
            "code",
            redirect_uri=redirect_uri,
            scope=self.scope,
            state=state_nonce,
            **extra,
        )

    async def _token_request(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        client = self._client()
        try:
            return await getattr(client, method)(self.token_url, **kwargs)
        except OAuthError as e:
            raise IdPError(f"{e.error}: {e.description}" if e.description else str(e.error)) from e
        except httpx.TimeoutException as e:
            raise IdPError(f"token endpoint timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise IdPError(f"token endpoint returned {e.response.status_code}", e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise IdPError(f"token request failed: {e.__class__.__name__}") from e
        finally:
            await client.aclose()

    async def exchange_code(
        self,
        authorization_code: str,
        redirect_uri: str,
        *,
        code_verifier: Optional[str] = None,
    ) -> TokenGrant:
        params: Dict[str, Any] = {"code": authorization_code, "redirect_uri": redirect_uri}
        if code_verifier:
            params["code_verifier"] = code_verifier

        token = await self._token_request("fetch_token", grant_type="authorization_code", **params)
        grant = _grant_from_token(token)
        log.info("code exchange ok expires_in=%s has_refresh=%s", grant.expires_in, bool(grant.refresh_token))
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        token = await self._token_request("refresh_token", refresh_token=refresh_token)
        grant = _grant_from_token(token, fallback_refresh=refresh_token)
        log.info("token refresh ok expires_in=%s", grant.expires_in)
        return grant
