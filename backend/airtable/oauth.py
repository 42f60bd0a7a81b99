"""
Airtable OAuth client.

Builds the authorization URL (with a PKCE challenge) and exchanges
authorization codes and refresh tokens for access tokens. The flow
itself is Airtable's; this module only speaks it.
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from backend.airtable.client import AirtableError, CurlLoggingAsyncClient

logger = logging.getLogger(__name__)

DEFAULT_AUTH_URL = "https://airtable.com/oauth2/v1/authorize"
DEFAULT_TOKEN_URL = "https://airtable.com/oauth2/v1/token"
DEFAULT_SCOPES = ("data.records:read", "data.records:write", "schema.bases:read")


class TokenGrant(BaseModel):
    """Tokens returned by the token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in)


class PendingAuthorization(BaseModel):
    """What the callback needs to finish a flow started by ``start_authorization``."""

    url: str
    state: str
    code_verifier: str


def _code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class AirtableOAuth:
    """OAuth 2.0 authorization-code client for Airtable.

    Args:
        client_id: The registered integration's client id.
        client_secret: Optional secret; when set the token endpoint is
            called with HTTP basic auth.
        redirect_uri: Where Airtable sends the user back.
        auth_url / token_url: Endpoint URLs (injected configuration).
        timeout: Token request timeout in seconds.
        transport: Optional httpx transport for tests.
    """

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        auth_url: str = DEFAULT_AUTH_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        scopes: tuple[str, ...] = DEFAULT_SCOPES,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url
        self.token_url = token_url
        self.scopes = scopes
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def start_authorization(self) -> PendingAuthorization:
        """Create a fresh state and PKCE verifier and the URL to send the user to."""
        state = secrets.token_urlsafe(16)
        verifier = secrets.token_urlsafe(64)
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": _code_challenge(verifier),
            "code_challenge_method": "S256",
        })
        return PendingAuthorization(
            url=f"{self.auth_url}?{query}",
            state=state,
            code_verifier=verifier,
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        })

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Trade a refresh token for a new access token."""
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def _token_request(self, data: dict[str, str]) -> TokenGrant:
        auth = None
        if self.client_secret:
            auth = httpx.BasicAuth(self.client_id or "", self.client_secret)
        else:
            data = {**data, "client_id": self.client_id or ""}

        try:
            async with CurlLoggingAsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(self.token_url, data=data, auth=auth)
        except httpx.HTTPError as e:
            logger.error("Airtable token request failed: %s", e)
            raise AirtableError(f"Could not reach Airtable: {e}") from e

        if not response.is_success:
            logger.warning(
                "Airtable token endpoint returned %d for grant '%s'",
                response.status_code,
                data.get("grant_type"),
            )
            raise AirtableError(
                "Airtable rejected the token request",
                status_code=response.status_code,
                payload=response.text,
            )
        return TokenGrant(**response.json())
