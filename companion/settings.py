from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COMPANION_", env_file=".env", extra="ignore")

    # Public URL of this service (the IdP redirects back here)
    BASE_URL: AnyUrl = Field(default="https://localhost:3000")
    CALLBACK_PATH: str = Field(default="/authresponse")
    PROVISION_PATH: str = Field(default="/provision")

    # Identity provider
    IDP_AUTHORIZE_URL: AnyUrl = Field(default="https://www.amazon.com/ap/oa")
    IDP_TOKEN_URL: AnyUrl = Field(default="https://api.amazon.com/auth/o2/token")
    IDP_CLIENT_ID: str = Field(default="companion")
    IDP_CLIENT_SECRET: Optional[str] = Field(default=None)
    IDP_TOKEN_AUTH_METHOD: str = Field(default="client_secret_post")
    IDP_SCOPE: str = Field(default="alexa:all")
    # When set, the authorize URL carries scope_data={KEY: {productID, productInstanceAttributes}}
    IDP_SCOPE_DATA_KEY: Optional[str] = Field(default=None)
    IDP_TIMEOUT_SECONDS: float = Field(default=10.0)
    IDP_USE_PKCE: bool = Field(default=True)

    # Flow lifetimes
    CODE_TTL_SECONDS: int = Field(default=600)
    SESSION_TTL_SECONDS: int = Field(default=900)
    POLL_INTERVAL_SECONDS: int = Field(default=5)
    REG_CODE_LENGTH: int = Field(default=6, ge=4, le=16)
    PURGE_INTERVAL_SECONDS: int = Field(default=60)

    # {"product-id": ["serial-1", "serial-2"]}; empty means any product/serial is accepted
    PRODUCTS: Dict[str, List[str]] = Field(default_factory=dict)

    REFRESH_ON_POLL: bool = Field(default=True)
    TOKEN_REFRESH_SKEW_SECONDS: int = Field(default=60)

    # Set by the TLS-terminating proxy after client certificate verification
    CLIENT_VERIFY_HEADER: str = Field(default="x-client-verify")
    CLIENT_SUBJECT_HEADER: str = Field(default="x-client-subject")
    CLIENT_VERIFY_SUCCESS: str = Field(default="SUCCESS")

    LOG_LEVEL: str = Field(default="INFO")

    @property
    def callback_url(self) -> str:
        return f"{str(self.BASE_URL).rstrip('/')}{self.CALLBACK_PATH}"

    def verification_url(self, code: str) -> str:
        return f"{str(self.BASE_URL).rstrip('/')}{self.PROVISION_PATH}/{code}"


settings = Settings()
