"""
Airtable REST client.

Thin async wrapper around the Airtable Web API used by the builder
(browse bases, tables and fields) and by the submission pipeline
(create a record). Every call takes the user's OAuth access token.

Set LOG_AIRTABLE_CURL=1 to print each request as a curl command with
the bearer token redacted.
"""

import logging
import os
from typing import Any

import httpx

from backend.core.schema import FieldType

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.airtable.com/v0"
DEFAULT_TIMEOUT_SECONDS = 15.0

# Airtable column types we can render, mapped to form field types.
# Any other column type is left out of the builder.
AIRTABLE_TYPE_MAP: dict[str, FieldType] = {
    "singleLineText": FieldType.SHORT_TEXT,
    "multilineText": FieldType.LONG_TEXT,
    "singleSelect": FieldType.SINGLE_SELECT,
    "multipleSelects": FieldType.MULTIPLE_SELECT,
    "multipleAttachments": FieldType.ATTACHMENT,
}


def _is_truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _build_safe_curl(request: httpx.Request) -> str:
    """Build a debug curl command with sensitive headers redacted."""
    curl = f"curl -X {request.method} '{request.url}'"
    for key, value in request.headers.items():
        header_value = value
        if key.lower() in {"authorization", "x-api-key", "api-key"}:
            header_value = "[REDACTED]"
        curl += f" -H '{key}: {header_value}'"

    if request.content:
        body = request.content.decode(errors="ignore")
        max_body_chars = 2000
        if len(body) > max_body_chars:
            body = body[:max_body_chars] + "... [TRUNCATED]"
        curl += f" -d '{body}'"
    return curl


class CurlLoggingAsyncClient(httpx.AsyncClient):
    async def send(self, request, *args, **kwargs):
        if _is_truthy(os.getenv("LOG_AIRTABLE_CURL"), default=False):
            logger.info("Airtable request: %s", _build_safe_curl(request))
        return await super().send(request, *args, **kwargs)


class AirtableError(Exception):
    """Raised when Airtable rejects a request or cannot be reached.

    Attributes:
        status_code: HTTP status returned by Airtable (None for network errors).
        payload: The decoded error body, when Airtable sent one.
    """

    def __init__(self, message: str, status_code: int | None = None, payload: Any = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


def map_airtable_field(raw: dict[str, Any]) -> dict[str, Any] | None:
    """Convert an Airtable field schema into a builder field, or None if unsupported.

    Select choices become ``[{id, name}]`` options.
    """
    field_type = AIRTABLE_TYPE_MAP.get(raw.get("type", ""))
    if field_type is None:
        return None

    mapped: dict[str, Any] = {
        "id": raw.get("id"),
        "name": raw.get("name"),
        "type": field_type.value,
    }
    if field_type in (FieldType.SINGLE_SELECT, FieldType.MULTIPLE_SELECT):
        choices = (raw.get("options") or {}).get("choices") or []
        mapped["options"] = [
            {
                "id": str(choice.get("id") or choice.get("name")),
                "name": str(choice.get("name") or choice.get("id")),
            }
            for choice in choices
            if isinstance(choice, dict)
        ]
    return mapped


class AirtableClient:
    """Async client for the Airtable Web API.

    Args:
        api_url: Base URL of the API (injected so tests and proxies can override it).
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass an httpx.MockTransport).
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # -----------------------------------------------------------------
    # Metadata
    # -----------------------------------------------------------------

    async def whoami(self, token: str) -> dict[str, Any]:
        """Return the profile of the token's owner (``id``, ``email``...)."""
        return await self._request("GET", "/meta/whoami", token)

    async def list_bases(self, token: str) -> list[dict[str, str]]:
        """List every base the token can access, following pagination."""
        bases: list[dict[str, str]] = []
        offset: str | None = None
        while True:
            params = {"offset": offset} if offset else None
            data = await self._request("GET", "/meta/bases", token, params=params)
            bases.extend(
                {"id": b.get("id"), "name": b.get("name")}
                for b in data.get("bases") or []
            )
            offset = data.get("offset")
            if not offset:
                return bases

    async def get_tables(self, token: str, base_id: str) -> list[dict[str, Any]]:
        """Return the raw table schemas of a base."""
        data = await self._request("GET", f"/meta/bases/{base_id}/tables", token)
        return list(data.get("tables") or [])

    async def list_tables(self, token: str, base_id: str) -> list[dict[str, str]]:
        return [
            {"id": t.get("id"), "name": t.get("name")}
            for t in await self.get_tables(token, base_id)
        ]

    async def list_form_fields(self, token: str, base_id: str, table_id: str) -> list[dict[str, Any]]:
        """Return the table's fields that a form can use, in Airtable order.

        Raises:
            AirtableError: With status 404 if the table is not in the base.
        """
        tables = await self.get_tables(token, base_id)
        table = next((t for t in tables if t.get("id") == table_id), None)
        if table is None:
            raise AirtableError("Table not found in the specified base", status_code=404)

        fields = []
        for raw in table.get("fields") or []:
            mapped = map_airtable_field(raw)
            if mapped is not None:
                fields.append(mapped)
        return fields

    # -----------------------------------------------------------------
    # Records
    # -----------------------------------------------------------------

    async def create_record(
        self,
        token: str,
        base_id: str,
        table_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Create one record. ``typecast`` lets Airtable coerce select values."""
        return await self._request(
            "POST",
            f"/{base_id}/{table_id}",
            token,
            json={"fields": fields, "typecast": True},
        )

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send an authenticated request and return the decoded JSON body.

        Raises:
            AirtableError: On transport failures and non-2xx responses.
        """
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with CurlLoggingAsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Airtable %s %s failed: %s", method, path, e)
            raise AirtableError(f"Could not reach Airtable: {e}") from e

        if response.is_success:
            return response.json()

        payload = _decode_error(response)
        logger.warning(
            "Airtable %s %s returned %d: %s", method, path, response.status_code, payload
        )
        raise AirtableError(
            _error_message(payload, response.status_code),
            status_code=response.status_code,
            payload=payload,
        )


def _decode_error(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(payload: Any, status_code: int) -> str:
    """Pull Airtable's ``{"error": {"type", "message"}}`` into one line."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("type") or f"Airtable error {status_code}"
        if isinstance(error, str):
            return error
    return f"Airtable request failed with status {status_code}"
