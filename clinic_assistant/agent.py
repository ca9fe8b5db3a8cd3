"""LangGraph orchestration for the clinic assistant.

Architecture:
  One turn is a LangGraph StateGraph run:

    1. **classify**  static rules, then one JSON-mode LLM call if needed
    2. **resolve**   flatten the CRM treatment forest and pick the
                     treatments relevant to the intent
    3. **<intent>**  the intent's handler node builds the reply and the
                     treatment cards shown with it

  Routing:
    classify -> resolve -> (route_by_intent) -> cost_inquiry | treatment_list
             | specific_treatment | doctor_inquiry | appointment_booking
             | clinic_info | general_info | off_topic | default -> END

  The per-request LLM provider travels in
  ``config["configurable"]["llm"]``: it is built from one snapshot of the
  runtime LLM settings when the request starts, so nodes never read global
  settings.

  No checkpointer: turns are independent and nothing is persisted.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Callable

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from clinic_assistant.config import CONTENT_CACHE_TTL_SECONDS
from clinic_assistant.engine.aggregator import ContextAggregator
from clinic_assistant.engine.appointments import validation_errors
from clinic_assistant.engine.classifier import classify
from clinic_assistant.engine.dispatcher import (
    ResponseDispatcher,
    TurnContext,
    relevant_treatments,
    treatments_to_show,
)
from clinic_assistant.engine.resolver import flatten
from clinic_assistant.engine.streaming import CancellationToken, StreamEmitter
from clinic_assistant.models import (
    AppointmentDraft,
    BookingResult,
    ChatResult,
    IntentLabel,
    Reply,
    StreamChunk,
    TreatmentNode,
)
from clinic_assistant.prompts import FALLBACK_REPLY
from clinic_assistant.services.cache import TTLCache
from clinic_assistant.services.crm_client import get_crm_client
from clinic_assistant.services.llm_provider import LLMConfig, LLMConfigStore, LLMProvider, llm_config_store
from clinic_assistant.services.web_content import WebContentClient
from clinic_assistant.utils import sanitize_for_log

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """State for one patient message.

    ``flat`` is the flattened treatment list, ``treatments`` the subset the
    intent's handler works with, ``reply`` the handler's output.
    """

    query: str
    stream: bool
    intent: IntentLabel
    flat: list[TreatmentNode]
    treatments: list[TreatmentNode]
    reply: Reply


# Intents whose handlers never look at treatments
_NO_TREATMENT_INTENTS = {
    IntentLabel.OFF_TOPIC,
    IntentLabel.APPOINTMENT_BOOKING,
    IntentLabel.CLINIC_INFO,
    IntentLabel.GENERAL_INFO,
}

# intent -> handler node name; anything else goes to "default"
_HANDLER_NODES = {
    IntentLabel.COST_INQUIRY: "cost_inquiry",
    IntentLabel.TREATMENT_LIST: "treatment_list",
    IntentLabel.SPECIFIC_TREATMENT: "specific_treatment",
    IntentLabel.TREATMENT_SELECTION: "specific_treatment",
    IntentLabel.DOCTOR_INQUIRY: "doctor_inquiry",
    IntentLabel.APPOINTMENT_BOOKING: "appointment_booking",
    IntentLabel.CLINIC_INFO: "clinic_info",
    IntentLabel.GENERAL_INFO: "general_info",
    IntentLabel.OFF_TOPIC: "off_topic",
}


def _llm_from(config: RunnableConfig | None):
    return ((config or {}).get("configurable") or {}).get("llm")


# ── Nodes ────────────────────────────────────────────────────────────


def _make_classify_node():
    async def classify_node(state: TurnState, config: RunnableConfig) -> dict:
        intent = await classify(state["query"], _llm_from(config))
        logger.info("Intent %s for %r", intent.value, sanitize_for_log(state["query"]))
        return {"intent": intent}

    return classify_node


def _make_resolve_node(aggregator: ContextAggregator):
    async def resolve_node(state: TurnState) -> dict:
        intent = state["intent"]
        if intent in _NO_TREATMENT_INTENTS:
            return {"flat": [], "treatments": []}
        flat = flatten(await aggregator.get_treatment_forest())
        treatments = relevant_treatments(intent, state["query"], flat)
        logger.debug("Resolved %d of %d treatments for %s", len(treatments), len(flat), intent.value)
        return {"flat": flat, "treatments": treatments}

    return resolve_node


def _make_handler_node(dispatcher: ResponseDispatcher, aggregator: ContextAggregator):
    async def handler_node(state: TurnState, config: RunnableConfig) -> dict:
        ctx = TurnContext(
            query=state["query"],
            intent=state["intent"],
            flat=state.get("flat", []),
            treatments=state.get("treatments", []),
            llm=_llm_from(config),
            stream=state.get("stream", False),
        )
        reply = await dispatcher.dispatch(ctx)
        shown = treatments_to_show(ctx.intent, ctx.query, ctx.treatments)
        reply.treatments_to_show = await aggregator.enrich(shown) if shown else None
        return {"reply": reply}

    return handler_node


# ── Conditional edges ────────────────────────────────────────────────


def route_by_intent(state: TurnState) -> str:
    return _HANDLER_NODES.get(state.get("intent", IntentLabel.OTHER), "default")


# ── Graph assembly ───────────────────────────────────────────────────


def build_turn_graph(aggregator: ContextAggregator, dispatcher: ResponseDispatcher | None = None):
    """Compile the per-turn graph.

    Invoke with::

        await graph.ainvoke(
            {"query": "...", "stream": False},
            config={"configurable": {"llm": provider}},
        )
    """
    dispatcher = dispatcher or ResponseDispatcher(aggregator)
    graph = StateGraph(TurnState)

    graph.add_node("classify", _make_classify_node())
    graph.add_node("resolve", _make_resolve_node(aggregator))
    handler_names = sorted(set(_HANDLER_NODES.values()) | {"default"})
    for name in handler_names:
        graph.add_node(name, _make_handler_node(dispatcher, aggregator))
        graph.add_edge(name, END)

    graph.set_entry_point("classify")
    graph.add_edge("classify", "resolve")
    graph.add_conditional_edges("resolve", route_by_intent, {name: name for name in handler_names})

    compiled = graph.compile()
    logger.debug("Turn graph compiled with %d handler nodes", len(handler_names))
    return compiled


# ── Facade ───────────────────────────────────────────────────────────


class ClinicAssistant:
    """Entry points used by the HTTP transport and the CLI."""

    def __init__(
        self,
        aggregator: ContextAggregator,
        *,
        config_store: LLMConfigStore = llm_config_store,
        emitter: StreamEmitter | None = None,
        provider_factory: Callable[[LLMConfig], Any] = LLMProvider,
    ):
        self.aggregator = aggregator
        self.config_store = config_store
        self._emitter = emitter or StreamEmitter()
        self._provider_factory = provider_factory
        self._graph = build_turn_graph(aggregator)

    async def _run_turn(self, message: str, *, stream: bool) -> Reply:
        llm = self._provider_factory(self.config_store.get_config())
        result = await self._graph.ainvoke(
            {"query": message, "stream": stream},
            config={"configurable": {"llm": llm}},
        )
        return result["reply"]

    async def process_query(self, message: str) -> ChatResult:
        """Answer *message* in one piece.  Never raises."""
        try:
            reply = await self._run_turn(message, stream=False)
        except Exception:
            logger.exception("Turn failed for %r", sanitize_for_log(message))
            return ChatResult(message=FALLBACK_REPLY, intent=IntentLabel.ERROR)

        treatments = [t.summary() for t in reply.treatments_to_show] if reply.treatments_to_show else None
        return ChatResult(
            message=reply.text,
            intent=reply.intent,
            treatments=treatments,
            booking_cta=reply.booking_cta,
            quote_cta=reply.quote_cta,
        )

    async def process_query_stream(
        self,
        message: str,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Answer *message* as metadata, content chunks and one terminal chunk."""
        async for chunk in self._emitter.emit(lambda: self._run_turn(message, stream=True), cancel):
            yield chunk

    async def book_appointment(self, draft: AppointmentDraft) -> BookingResult:
        """Direct booking passthrough (appointment form), validated like chat bookings."""
        errors = validation_errors(draft)
        if errors:
            fields = ", ".join(errors)
            return BookingResult(success=False, message=f"Please check these fields: {fields}.")
        return await self.aggregator.book_appointment(draft)


def create_clinic_assistant() -> ClinicAssistant:
    """Wire the assistant to the real CRM and web content clients."""
    aggregator = ContextAggregator(
        get_crm_client(),
        WebContentClient(),
        TTLCache(ttl_seconds=CONTENT_CACHE_TTL_SECONDS),
    )
    return ClinicAssistant(aggregator)
