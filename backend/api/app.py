"""
FastAPI application factory for the Airtable form builder.

Creates and configures the FastAPI app, initializes the form/user stores,
the fill session store, the Airtable client and OAuth settings, and routes.

Run with:
    uvicorn backend.api.app:app --reload
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.airtable.client import DEFAULT_API_URL, AirtableClient
from backend.airtable.oauth import DEFAULT_AUTH_URL, DEFAULT_TOKEN_URL, AirtableOAuth
from backend.api.routes import configure_routes, router
from backend.core.session import FillSessionStore
from backend.core.store import InMemoryDocumentStore, SQLiteDocumentStore

# Load environment variables from .env
load_dotenv()

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _create_stores(store_path: str | None):
    """Return (form_store, user_store): SQLite when a path is set, else in memory."""
    if store_path:
        return (
            SQLiteDocumentStore(store_path, "forms"),
            SQLiteDocumentStore(store_path, "users"),
        )
    return InMemoryDocumentStore(), InMemoryDocumentStore()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    store_path = os.getenv("FORM_STORE_PATH")
    form_store, user_store = _create_stores(store_path)

    session_timeout = int(os.getenv("SESSION_TIMEOUT_SECONDS", "1800"))
    session_store = FillSessionStore(timeout_seconds=session_timeout)

    airtable_timeout = float(os.getenv("AIRTABLE_TIMEOUT_SECONDS", "15"))
    airtable = AirtableClient(
        api_url=os.getenv("AIRTABLE_API_URL", DEFAULT_API_URL),
        timeout=airtable_timeout,
    )
    oauth = AirtableOAuth(
        client_id=os.getenv("AIRTABLE_CLIENT_ID"),
        client_secret=os.getenv("AIRTABLE_CLIENT_SECRET"),
        redirect_uri=os.getenv(
            "AIRTABLE_REDIRECT_URI", "http://localhost:8000/api/oauth/callback"
        ),
        auth_url=os.getenv("AIRTABLE_AUTH_URL", DEFAULT_AUTH_URL),
        token_url=os.getenv("AIRTABLE_TOKEN_URL", DEFAULT_TOKEN_URL),
        timeout=airtable_timeout,
    )
    if not oauth.configured:
        logger.warning(
            "AIRTABLE_CLIENT_ID is not set. "
            "The /oauth endpoints will fail until OAuth is configured."
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Form builder backend starting up")
        logger.info("Form store: %s", store_path or "in-memory")
        logger.info("Airtable API: %s", airtable.api_url)
        logger.info("Session timeout: %d seconds", session_timeout)
        yield
        logger.info("Form builder backend shutting down (%d open sessions)", session_store.count())

    application = FastAPI(
        title="Airtable Form Builder",
        description="Build forms over Airtable tables with conditional logic",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: every origin unless CORS_ALLOWED_ORIGINS narrows it
    allowed_origins = os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Configure routes with dependencies
    configure_routes(
        form_store,
        user_store,
        session_store,
        airtable=airtable,
        oauth=oauth,
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
    )
    application.include_router(router, prefix="/api")

    return application


# Create the app instance (used by uvicorn)
app = create_app()
