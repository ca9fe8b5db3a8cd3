"""FastAPI server for the clinic assistant.

Run with:
    uvicorn clinic_assistant.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from clinic_assistant.agent import create_clinic_assistant
from clinic_assistant.api.routes import router
from clinic_assistant.config import CLINIC_NAME, CORS_ORIGINS, SERVER_HOST, SERVER_PORT

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the assistant once at start-up; close its HTTP clients on shutdown."""
    logger.info("Building clinic assistant…")
    assistant = create_clinic_assistant()
    application.state.assistant = assistant
    logger.info("Assistant ready.")
    yield
    await assistant.aggregator.aclose()
    logger.info("Collaborator clients closed.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title=f"{CLINIC_NAME} Assistant",
    description=(
        "Conversational assistant for an aesthetic clinic: treatments, "
        "prices, doctors, clinic information and appointment requests."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": f"{CLINIC_NAME} Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


def run() -> None:
    logger.info("Starting clinic assistant API on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("clinic_assistant.server:app", host=SERVER_HOST, port=SERVER_PORT)


if __name__ == "__main__":
    run()
