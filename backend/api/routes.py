"""
FastAPI routes for the form builder backend.

Endpoints (mounted under /api):
- GET    /health                                — health check
- GET    /oauth/auth                            — start the Airtable OAuth flow
- GET    /oauth/callback                        — finish it and redirect to the web app
- POST   /oauth/refresh                         — refresh a user's access token
- GET    /oauth/profile/{user_id}               — connected user profile
- POST   /oauth/logout                          — forget a user's tokens
- GET    /bases/{user_id}                       — Airtable bases
- GET    /tables/{user_id}/{base_id}            — tables of a base
- GET    /fields/{user_id}/{base_id}/{table_id} — form-compatible fields of a table
- GET    /schemas, /schemas/{filename}          — example form definitions
- POST   /forms/check                           — rule warnings for an unsaved form
- POST   /forms/preview                         — builder preview for an unsaved form
- POST   /forms/{user_id}                       — save a form
- GET    /forms/user/{user_id}                  — a user's forms, newest first
- GET    /forms/{form_id}                       — a saved form
- DELETE /forms/{form_id}                       — delete a form
- POST   /forms/{form_id}/visibility            — visible fields for some answers
- POST   /forms/{form_id}/validate              — submission validation for some answers
- POST   /forms/submit/{form_id}                — validate and write a record to Airtable
- POST   /sessions                              — open a fill session
- GET    /sessions/{session_id}                 — session answers, visibility and validation
- PUT    /sessions/{session_id}/answers/{field_id} — set one answer
- POST   /sessions/{session_id}/answers         — set several answers
- POST   /sessions/{session_id}/reset           — clear the session's answers
- POST   /sessions/{session_id}/submit          — submit the session's answers
- DELETE /sessions/{session_id}                 — close a session
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from backend.airtable.client import AirtableError
from backend.airtable.submission import build_submission
from backend.core.accounts import AirtableUser
from backend.core.checks import find_rule_warnings
from backend.core.form_state import AnswerValidationError
from backend.core.schema import FormDefinition
from backend.core.session import FillSession
from backend.core.validation import validate
from backend.core.visibility import annotate_visibility, explain_field, get_visible_fields

logger = logging.getLogger(__name__)

router = APIRouter()

# These will be injected by the app factory
_form_store = None
_user_store = None
_session_store = None
_airtable = None
_oauth = None
_frontend_url = "http://localhost:5173"

# OAuth state -> (PKCE code verifier, start time), for flows started but not finished yet
_pending_authorizations: dict[str, tuple[str, float]] = {}
_pending_lock = threading.Lock()

# An abandoned authorization is forgotten after 10 minutes
PENDING_AUTHORIZATION_TTL_SECONDS = 10 * 60
MAX_PENDING_AUTHORIZATIONS = 1000

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


def configure_routes(
    form_store,
    user_store,
    session_store,
    airtable=None,
    oauth=None,
    frontend_url: str | None = None,
):
    """Inject stores, the Airtable client and OAuth settings into the routes module.

    Called by the app factory during startup.
    """
    global _form_store, _user_store, _session_store, _airtable, _oauth, _frontend_url
    _form_store = form_store
    _user_store = user_store
    _session_store = session_store
    _airtable = airtable
    _oauth = oauth
    if frontend_url:
        _frontend_url = frontend_url.rstrip("/")
    with _pending_lock:
        _pending_authorizations.clear()


# --- Request Models ---


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AnswersRequest(BaseModel):
    """Request body carrying an answer map."""

    answers: dict[str, Any] = Field(default_factory=dict)


class PreviewRequest(BaseModel):
    """An unsaved form plus the answers typed into the builder preview."""

    form: FormDefinition
    answers: dict[str, Any] = Field(default_factory=dict)


class SubmitRequest(BaseModel):
    """Request body for /forms/submit: answers keyed by field ID."""

    data: dict[str, Any]


class SessionCreateRequest(_CamelRequest):
    form_id: str = Field(..., alias="formId")


class AnswerUpdateRequest(BaseModel):
    value: Any = None


class UserRequest(_CamelRequest):
    user_id: str = Field(..., alias="userId")


# --- Helpers ---


def _require_stores() -> None:
    if _form_store is None or _user_store is None or _session_store is None:
        raise HTTPException(status_code=500, detail="Server not properly configured")


def _require_airtable() -> None:
    _require_stores()
    if _airtable is None:
        raise HTTPException(status_code=500, detail="Server not properly configured")


def _load_form(form_id: str) -> FormDefinition:
    _require_stores()
    doc = _form_store.get(form_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Form not found")
    return FormDefinition(**doc)


def _load_user(user_id: str) -> AirtableUser | None:
    doc = _user_store.get(user_id)
    return AirtableUser(**doc) if doc is not None else None


def _airtable_failure(error: AirtableError, message: str) -> HTTPException:
    """Translate an Airtable failure, keeping the provider's status when it sent one."""
    status = error.status_code if error.status_code and error.status_code >= 400 else 502
    return HTTPException(status_code=status, detail={"message": message, "error": error.message})


async def _get_access_token(user_id: str) -> str:
    """Return a usable Airtable token for the user, refreshing it if it expired."""
    user = _load_user(user_id)
    if user is None or not user.access_token:
        raise HTTPException(status_code=404, detail="Airtable access token not found for user")

    if user.token_expired() and user.refresh_token and _oauth is not None and _oauth.configured:
        logger.info("Refreshing expired Airtable token for user %s", user_id)
        try:
            user = await _refresh_user_token(user)
        except AirtableError as e:
            logger.error("Token refresh for user %s failed: %s", user_id, e)
            raise _airtable_failure(e, "Failed to refresh token")
    return user.access_token


async def _refresh_user_token(user: AirtableUser) -> AirtableUser:
    grant = await _oauth.refresh(user.refresh_token)
    changes = {
        "accessToken": grant.access_token,
        # Keep the old refresh token if a new one was not provided
        "refreshToken": grant.refresh_token or user.refresh_token,
        "tokenExpiresAt": _iso(grant.expires_at()),
    }
    return AirtableUser(**_user_store.update(user.id, changes))


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _visibility_payload(form: FormDefinition, answers: dict[str, Any]) -> dict[str, Any]:
    return {
        "visibleFieldIds": [f.field_id for f in get_visible_fields(form, answers)],
        "fields": annotate_visibility(form, answers),
    }


def _session_view(session_id: str, session: FillSession) -> dict[str, Any]:
    collector = session.collector
    return {
        "sessionId": session_id,
        "formId": session.form.id,
        "answers": collector.snapshot(),
        **_visibility_payload(session.form, collector.answers),
        "validation": collector.validate().model_dump(by_alias=True),
    }


def _get_session(session_id: str) -> FillSession:
    _require_stores()
    session = _session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


async def _submit_answers(form: FormDefinition, answers: dict[str, Any]) -> dict[str, Any]:
    """Validate the answers and create the Airtable record.

    Raises:
        HTTPException: 400 with every missing field when validation fails,
            or the translated Airtable failure.
    """
    result = validate(form, answers)
    if not result.valid:
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Please fill in all required fields",
                "errors": [e.model_dump(by_alias=True) for e in result.errors],
            },
        )

    if not form.user:
        raise HTTPException(status_code=500, detail="Form is missing its creator reference")
    token = await _get_access_token(form.user)

    payload = build_submission(form, answers)
    try:
        record = await _airtable.create_record(
            token, payload.base_id, payload.table_id, payload.fields
        )
    except AirtableError as e:
        raise _airtable_failure(e, "Unable to submit form")

    logger.info(
        "Submitted form %s to %s/%s (%d fields)",
        form.id, payload.base_id, payload.table_id, len(payload.fields),
    )
    response: dict[str, Any] = {"record": record}
    warning = payload.warning()
    if warning:
        response["warning"] = warning
    return response


def _redirect_to_frontend(**params: str) -> RedirectResponse:
    return RedirectResponse(f"{_frontend_url}/oauth/callback?{urlencode(params)}")


def _purge_stale_authorizations(now: float) -> None:
    """Drop authorizations older than the TTL. Caller holds _pending_lock."""
    stale = [
        state for state, (_, started_at) in _pending_authorizations.items()
        if now - started_at > PENDING_AUTHORIZATION_TTL_SECONDS
    ]
    for state in stale:
        del _pending_authorizations[state]


def _remember_authorization(state: str, code_verifier: str) -> None:
    now = time.time()
    with _pending_lock:
        _purge_stale_authorizations(now)
        while len(_pending_authorizations) >= MAX_PENDING_AUTHORIZATIONS:
            oldest = min(_pending_authorizations, key=lambda s: _pending_authorizations[s][1])
            del _pending_authorizations[oldest]
        _pending_authorizations[state] = (code_verifier, now)


def _take_authorization(state: str | None) -> str | None:
    """Return and forget the verifier of a pending, unexpired authorization."""
    now = time.time()
    with _pending_lock:
        _purge_stale_authorizations(now)
        entry = _pending_authorizations.pop(state or "", None)
    return entry[0] if entry else None


# --- OAuth ---


@router.get("/oauth/auth")
async def oauth_authorize():
    """Return the Airtable authorization URL the browser should open."""
    if _oauth is None or not _oauth.configured:
        raise HTTPException(status_code=500, detail="OAuth not configured")

    pending = _oauth.start_authorization()
    _remember_authorization(pending.state, pending.code_verifier)
    return {"authUrl": pending.url, "state": pending.state}


@router.get("/oauth/callback")
async def oauth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """Finish the OAuth flow, store the user and send the browser back to the web app."""
    if error:
        logger.warning("OAuth error: %s %s", error, error_description)
        return _redirect_to_frontend(error=error, error_description=error_description or "")
    if not code:
        return _redirect_to_frontend(error="no_code")

    verifier = _take_authorization(state)
    if verifier is None:
        return _redirect_to_frontend(error="invalid_state")

    _require_airtable()
    try:
        grant = await _oauth.exchange_code(code, verifier)
        profile = await _airtable.whoami(grant.access_token)
    except AirtableError as e:
        logger.error("OAuth callback error: %s", e, exc_info=True)
        return _redirect_to_frontend(
            error="oauth_failed",
            error_description="Failed to complete OAuth flow",
        )

    airtable_id = profile.get("id")
    if not airtable_id:
        logger.error("Airtable profile has no id: %s", profile)
        return _redirect_to_frontend(
            error="oauth_failed",
            error_description="Failed to complete OAuth flow",
        )
    email = profile.get("email")
    fields = {
        "airtableId": airtable_id,
        "email": email,
        "name": profile.get("name") or (email.split("@")[0] if email else None),
        "accessToken": grant.access_token,
        "refreshToken": grant.refresh_token,
        "tokenExpiresAt": _iso(grant.expires_at()),
        "profile": profile,
    }
    existing = _user_store.find_one(airtableId=airtable_id)
    if existing:
        doc = _user_store.update(existing["id"], fields)
    else:
        doc = _user_store.insert(AirtableUser(**fields).to_document())
    user = AirtableUser(**doc)
    logger.info("Airtable account %s connected as user %s", airtable_id, user.id)

    user_data = {
        "id": user.id,
        "airtableId": user.airtable_id,
        "email": user.email,
        "name": user.name,
    }
    return _redirect_to_frontend(success="true", user=json.dumps(user_data))


@router.post("/oauth/refresh")
async def oauth_refresh(request: UserRequest):
    """Return a valid access token for the user, refreshing it if expired."""
    _require_stores()
    user = _load_user(request.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if user.token_expired():
        if _oauth is None or not _oauth.configured or not user.refresh_token:
            raise HTTPException(status_code=500, detail="Failed to refresh token")
        try:
            user = await _refresh_user_token(user)
        except AirtableError as e:
            logger.error("Token refresh error: %s", e)
            raise HTTPException(status_code=500, detail="Failed to refresh token")

    return {
        "success": True,
        "accessToken": user.access_token,
        "expiresAt": _iso(user.token_expires_at),
    }


@router.get("/oauth/profile/{user_id}")
async def oauth_profile(user_id: str):
    _require_stores()
    user = _load_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user.public_view()}


@router.post("/oauth/logout")
async def oauth_logout(request: UserRequest):
    """Clear the user's stored tokens."""
    _require_stores()
    updated = _user_store.update(
        request.user_id,
        {"accessToken": None, "refreshToken": None, "tokenExpiresAt": None},
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "message": "Logged out successfully"}


# --- Airtable metadata ---


@router.get("/bases/{user_id}")
async def list_bases(user_id: str):
    """Return the bases the user can access."""
    _require_airtable()
    token = await _get_access_token(user_id)
    try:
        bases = await _airtable.list_bases(token)
    except AirtableError as e:
        raise _airtable_failure(e, "Unable to fetch bases")
    return {"bases": bases}


@router.get("/tables/{user_id}/{base_id}")
async def list_tables(user_id: str, base_id: str):
    _require_airtable()
    token = await _get_access_token(user_id)
    try:
        tables = await _airtable.list_tables(token, base_id)
    except AirtableError as e:
        raise _airtable_failure(e, "Unable to fetch tables")
    return {"tables": tables}


@router.get("/fields/{user_id}/{base_id}/{table_id}")
async def list_fields(user_id: str, base_id: str, table_id: str):
    """Return the table's fields that can be added to a form."""
    _require_airtable()
    token = await _get_access_token(user_id)
    try:
        fields = await _airtable.list_form_fields(token, base_id, table_id)
    except AirtableError as e:
        raise _airtable_failure(e, "Unable to fetch fields")
    return {"fields": fields}


# --- Example form definitions ---


@router.get("/schemas")
async def list_schemas():
    """List the example form definitions shipped with the backend."""
    schemas = []
    if SCHEMAS_DIR.exists():
        for path in sorted(SCHEMAS_DIR.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            schemas.append({
                "filename": path.name,
                "title": data.get("name", path.stem),
                "fieldCount": len(data.get("fields", [])),
            })
    return {"schemas": schemas}


@router.get("/schemas/{filename}")
async def get_schema(filename: str):
    """Get one example form definition by filename."""
    path = (SCHEMAS_DIR / filename).resolve()
    if path.parent != SCHEMAS_DIR.resolve() or path.suffix != ".json" or not path.is_file():
        raise HTTPException(status_code=404, detail=f"Schema '{filename}' not found")

    try:
        return {"filename": filename, "form": json.loads(path.read_text(encoding="utf-8"))}
    except (OSError, ValueError):
        raise HTTPException(status_code=500, detail=f"Error reading schema file '{filename}'")


# --- Forms ---


@router.post("/forms/check")
async def check_form(form: FormDefinition):
    """Report questionable conditional logic in a form before it is saved."""
    warnings = find_rule_warnings(form)
    return {"warnings": [w.model_dump(by_alias=True) for w in warnings]}


@router.post("/forms/preview")
async def preview_form(request: PreviewRequest):
    """Evaluate an unsaved form against the answers typed into the builder preview.

    Uses the same evaluator as the public filler, plus a per-rule breakdown.
    """
    form, answers = request.form, request.answers
    known_ids = set(form.field_ids())
    visible = _visibility_payload(form, answers)
    for entry, field in zip(visible["fields"], form.fields):
        entry["rules"] = [
            r.model_dump(mode="json") for r in explain_field(field, answers, known_ids)
        ]
    return {
        **visible,
        "validation": validate(form, answers).model_dump(by_alias=True),
    }


@router.post("/forms/{user_id}", status_code=201)
async def create_form(user_id: str, form: FormDefinition):
    """Save a new form for the user."""
    _require_stores()
    if _user_store.get(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    doc = form.to_document()
    for key in ("id", "createdAt", "updatedAt"):
        doc.pop(key, None)
    doc["user"] = user_id
    saved = FormDefinition(**_form_store.insert(doc))

    warnings = find_rule_warnings(saved)
    logger.info(
        "Form %s saved for user %s (%d fields, %d rule warnings)",
        saved.id, user_id, len(saved.fields), len(warnings),
    )
    return {
        "form": saved.to_document(),
        "warnings": [w.model_dump(by_alias=True) for w in warnings],
    }


@router.get("/forms/user/{user_id}")
async def list_user_forms(user_id: str):
    _require_stores()
    return {"forms": _form_store.find(user=user_id)}


@router.get("/forms/{form_id}")
async def get_form(form_id: str):
    return {"form": _load_form(form_id).to_document()}


@router.delete("/forms/{form_id}")
async def delete_form(form_id: str):
    _require_stores()
    if not _form_store.delete(form_id):
        raise HTTPException(status_code=404, detail="Form not found")
    closed = _session_store.delete_sessions_for_form(form_id)
    logger.info("Form %s deleted (%d open sessions closed)", form_id, closed)
    return {"message": "Form deleted successfully"}


@router.post("/forms/{form_id}/visibility")
async def form_visibility(form_id: str, request: AnswersRequest):
    form = _load_form(form_id)
    return _visibility_payload(form, request.answers)


@router.post("/forms/{form_id}/validate")
async def form_validate(form_id: str, request: AnswersRequest):
    form = _load_form(form_id)
    return validate(form, request.answers).model_dump(by_alias=True)


@router.post("/forms/submit/{form_id}", status_code=201)
async def submit_form(form_id: str, request: SubmitRequest):
    """Validate a submission and create a record in the form's Airtable table."""
    _require_airtable()
    form = _load_form(form_id)
    return await _submit_answers(form, request.data)


# --- Fill sessions ---


@router.post("/sessions", status_code=201)
async def create_session(request: SessionCreateRequest):
    """Open a fill session with an empty answer map."""
    form = _load_form(request.form_id)
    session_id, session = _session_store.create_session(form)
    return _session_view(session_id, session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    return _session_view(session_id, _get_session(session_id))


@router.put("/sessions/{session_id}/answers/{field_id}")
async def set_session_answer(session_id: str, field_id: str, request: AnswerUpdateRequest):
    """Replace one answer and return the recomputed session view."""
    session = _get_session(session_id)
    try:
        session.collector.set_answer(field_id, request.value)
    except AnswerValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _session_view(session_id, session)


@router.post("/sessions/{session_id}/answers")
async def set_session_answers(session_id: str, request: AnswersRequest):
    """Set several answers at once; invalid ones are reported, not stored."""
    session = _get_session(session_id)
    _, rejected = session.collector.set_answers_bulk(request.answers)
    return {**_session_view(session_id, session), "rejected": rejected}


@router.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    session = _get_session(session_id)
    session.collector.reset()
    return _session_view(session_id, session)


@router.post("/sessions/{session_id}/submit", status_code=201)
async def submit_session(session_id: str):
    """Submit the session's current answers to Airtable."""
    _require_airtable()
    session = _get_session(session_id)
    return await _submit_answers(session.form, session.collector.snapshot())


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    _require_stores()
    deleted = _session_store.delete_session(session_id)
    return {
        "success": deleted,
        "message": "Session closed" if deleted else "Session not found",
    }


# --- Health ---


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "forms": _form_store.count() if _form_store else 0,
        "active_sessions": _session_store.count() if _session_store else 0,
    }
