"""
Connected Airtable accounts.

A user is created (or updated) when they finish the Airtable OAuth flow.
The stored access token is what lets the backend browse their bases and
write form submissions into their tables.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AirtableUser(BaseModel):
    """A user linked to an Airtable account."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    airtable_id: str = Field(..., alias="airtableId", min_length=1)
    email: str | None = None
    name: str | None = None
    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    token_expires_at: datetime | None = Field(default=None, alias="tokenExpiresAt")
    profile: dict[str, Any] = Field(default_factory=dict)

    def token_expired(self, now: datetime | None = None) -> bool:
        """True when the access token is known to be past its expiry."""
        if self.token_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def public_view(self) -> dict[str, Any]:
        """Profile fields safe to return to the browser (no tokens)."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"access_token", "refresh_token"},
        )
