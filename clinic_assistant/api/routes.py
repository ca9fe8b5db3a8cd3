"""FastAPI route definitions for the clinic assistant API."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from clinic_assistant.api.schemas import (
    AppointmentRequest,
    BookingResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    LLMConfigRequest,
    LLMConfigResponse,
    SearchResponse,
    WebPage,
)
from clinic_assistant.engine.streaming import CancellationToken
from clinic_assistant.services.llm_provider import DEFAULT_MODELS

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_assistant(request: Request):
    """Retrieve the ClinicAssistant built during the FastAPI lifespan."""
    assistant = getattr(request.app.state, "assistant", None)
    if assistant is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return assistant


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(http_request: Request):
    """Liveness plus a reachability check of each CRM data source."""
    assistant = _get_assistant(http_request)
    aggregator = assistant.aggregator
    treatments, doctors, clinic = await asyncio.gather(
        aggregator.get_treatment_forest(),
        aggregator.get_all_doctors(),
        aggregator.get_clinic_info(),
    )
    checks = {
        "treatments": bool(treatments),
        "doctors": bool(doctors),
        "clinic_info": clinic is not None,
    }
    return HealthResponse(status="ok" if all(checks.values()) else "degraded", checks=checks)


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Answer a patient message in one response."""
    assistant = _get_assistant(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await assistant.process_query(request.message)
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        message=result.message,
        intent=result.intent.value,
        treatments=result.treatments,
        booking_cta=result.booking_cta,
        quote_cta=result.quote_cta,
    )


@router.post("/chat/stream")
async def chat_stream(request: ChatRequest, http_request: Request):
    """Answer a patient message as Server-Sent Events.

    Each event is ``data: <json chunk>``: first ``metadata``, then
    ``content`` chunks, then one ``done`` or ``error``.  A client disconnect
    cancels the turn.
    """
    assistant = _get_assistant(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    cancel = CancellationToken()

    async def event_stream():
        try:
            async for chunk in assistant.process_query_stream(request.message, cancel):
                if await http_request.is_disconnected():
                    logger.info("[%s] Client disconnected mid-stream", request_id)
                    cancel.cancel()
                    break
                yield _sse(chunk.to_dict())
        finally:
            cancel.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/appointments/book", response_model=BookingResponse)
async def book_appointment(request: AppointmentRequest, http_request: Request):
    assistant = _get_assistant(http_request)
    result = await assistant.book_appointment(request.to_draft())
    return BookingResponse(success=result.success, message=result.message)


@router.get("/llm/config", response_model=LLMConfigResponse)
async def get_llm_config(http_request: Request):
    assistant = _get_assistant(http_request)
    return LLMConfigResponse(**assistant.config_store.get_config().public_view())


@router.post("/llm/config", response_model=LLMConfigResponse)
async def update_llm_config(request: LLMConfigRequest, http_request: Request):
    """Change (or reset) the LLM used by subsequent requests."""
    assistant = _get_assistant(http_request)
    store = assistant.config_store
    if request.reset:
        config = store.reset_to_default()
    else:
        try:
            config = store.update_config(
                provider=request.provider, api_key=request.api_key, model=request.model,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
    return LLMConfigResponse(**config.public_view())


@router.get("/llm/models")
async def list_llm_models():
    return DEFAULT_MODELS


@router.get("/search", response_model=SearchResponse)
async def search_web(
    http_request: Request,
    q: str = Query(..., min_length=1, max_length=200),
    max_results: int = Query(3, ge=1, le=10),
):
    """Search the web and return the extracted content of the top pages."""
    assistant = _get_assistant(http_request)
    pages = await assistant.aggregator.search_web(q, max_results)
    return SearchResponse(query=q, results=[WebPage(**page.model_dump()) for page in pages])
