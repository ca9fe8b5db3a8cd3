"""Response dispatcher: one handler per intent.

Handlers receive a :class:`TurnContext` (query, intent, flattened treatment
list, the treatments resolved for this intent, the request's LLM) and return
a :class:`Reply`.  Structured answers (prices, lists, doctor cards, booking
prompts) are built from templates; open-ended answers go through the LLM.

In streaming mode LLM-backed handlers return ``Reply.tokens`` (the live
token stream) instead of ``Reply.text``.  In non-streaming mode an LLM
failure is replaced by a fixed fallback text.
"""

from __future__ import annotations

import json
import logging
import re
import zlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from clinic_assistant.config import CLINIC_PHONE
from clinic_assistant.engine import appointments
from clinic_assistant.engine.aggregator import ContextAggregator
from clinic_assistant.engine.classifier import is_selection_reply
from clinic_assistant.engine.resolver import (
    display_name,
    extract_price_limit,
    filter_under_price,
    find_specific,
    is_specific_cost_query,
    normalize,
    priced,
    search,
    strip_filler,
    treatments_for_doctor,
)
from clinic_assistant.models import AppointmentDraft, DoctorRecord, IntentLabel, Reply, TreatmentNode
from clinic_assistant.prompts import (
    FALLBACK_REPLY,
    GENERAL_INFO_FALLBACK,
    OFF_TOPIC_REPLIES,
    STATIC_CLINIC_DESCRIPTION,
    get_assistant_prompt,
)
from clinic_assistant.services.llm_provider import ChatResponse

logger = logging.getLogger(__name__)

TREATMENT_LIST_CAP = 20
PRICE_LIST_CAP = 10
SHOWN_TREATMENTS_CAP = 3
DOCTOR_CARD_TREATMENTS = 5
LLM_TREATMENTS_CAP = 5


class ChatModel(Protocol):
    async def chat(self, messages: list[dict[str, str]], *, json_mode: bool = False) -> ChatResponse: ...
    def chat_stream(self, messages: list[dict[str, str]]): ...


@dataclass
class TurnContext:
    query: str
    intent: IntentLabel
    flat: list[TreatmentNode] = field(default_factory=list)
    treatments: list[TreatmentNode] = field(default_factory=list)
    llm: ChatModel | None = None
    stream: bool = False


Handler = Callable[[TurnContext], Awaitable[Reply]]


def quote_cta_token(name: str) -> str:
    """Call-to-action line the chat UI renders as a "contact for quote" control."""
    return f"📞 **[Contact for Quote - {name}]** - Get personalized pricing"


def format_price(node: TreatmentNode) -> str:
    value = node.price_value
    return f"₹{value:,}" if value is not None else node.price


def _doctor_title(doctor: DoctorRecord) -> str:
    return f"Dr. {doctor.plain_name}"


# ── Treatment relevance per intent ──────────────────────────────────

_PERFORM_QUERY_RE = re.compile(r"\b(perform|performs|who does|who do|doing|does)\b")


def _is_perform_query(query: str) -> bool:
    return _PERFORM_QUERY_RE.search(query.lower()) is not None


def relevant_treatments(intent: IntentLabel, query: str, flat: list[TreatmentNode]) -> list[TreatmentNode]:
    """Treatments the handler for *intent* should work with."""
    if intent is IntentLabel.COST_INQUIRY:
        limit = extract_price_limit(query)
        if limit is not None:
            return sorted(filter_under_price(flat, limit), key=lambda n: n.price_value or 0)
        node = find_specific(query, flat)
        if node is not None and node.has_price:
            return [node]
        hits = search(strip_filler(query), priced(flat))
        if hits:
            return hits
        return [node] if node is not None else []

    if intent is IntentLabel.TREATMENT_LIST:
        return list(flat)

    if intent in (IntentLabel.SPECIFIC_TREATMENT, IntentLabel.TREATMENT_SELECTION):
        node = find_specific(query, flat)
        return [node] if node is not None else []

    if intent is IntentLabel.DOCTOR_INQUIRY:
        service = service_from_query(query) if _is_perform_query(query) else None
        return search(service, flat) if service else []

    if intent in (
        IntentLabel.APPOINTMENT_BOOKING,
        IntentLabel.CLINIC_INFO,
        IntentLabel.GENERAL_INFO,
        IntentLabel.OFF_TOPIC,
        IntentLabel.ERROR,
    ):
        return []

    return search(strip_filler(query), flat)


def treatments_to_show(intent: IntentLabel, query: str, treatments: list[TreatmentNode]) -> list[TreatmentNode] | None:
    """Which resolved treatments are attached to the reply as cards."""
    if not treatments:
        return None
    if intent is IntentLabel.COST_INQUIRY and is_specific_cost_query(query):
        return treatments[:1]
    if intent is IntentLabel.SPECIFIC_TREATMENT:
        return treatments[:1]
    if intent in (IntentLabel.TREATMENT_SELECTION, IntentLabel.GENERAL_INFO, IntentLabel.OTHER):
        return None
    if intent is IntentLabel.DOCTOR_INQUIRY:
        return treatments[:1] if _is_perform_query(query) else None
    return treatments[:SHOWN_TREATMENTS_CAP]


# ── Doctor inquiry helpers ──────────────────────────────────────────

_SERVICE_QUERY_PATTERNS = [
    re.compile(r"doctors? for\s+(.+)", re.I),
    re.compile(r"which doctors? (?:do|does|perform|performs|handle|handles)\s+(.+)", re.I),
    re.compile(r"doctors? who (?:do|does|perform|performs|handle|handles)\s+(.+)", re.I),
    re.compile(r"doctors? (?:for|doing)\s+(.+)", re.I),
    re.compile(r"who (?:does|performs|do)\s+(.+)", re.I),
]
_NAMED_DOCTOR_PATTERNS = [
    re.compile(r"(?:about|who is)\s+(?:dr\.?|doctor)\s+(\w+)", re.I),
    re.compile(r"(?:about|tell me about)\s+(\w+)", re.I),
    re.compile(r"\b(?:dr\.?|doctor)\s+(\w+)", re.I),
]
_NOT_DOCTOR_NAMES = {"all", "available", "doctors", "doctor", "any", "list", "others", "your", "the", "for", "who"}


def service_from_query(query: str) -> str | None:
    for pattern in _SERVICE_QUERY_PATTERNS:
        match = pattern.search(query)
        if match:
            service = normalize(match.group(1))
            service = re.sub(r"\b(treatment|treatments|procedure|here|at your clinic)\b", " ", service)
            service = " ".join(service.split())
            if service:
                return service
    return None


def named_doctor_from_query(query: str) -> str | None:
    for pattern in _NAMED_DOCTOR_PATTERNS:
        for match in pattern.finditer(query):
            name = match.group(1).lower()
            if len(name) > 2 and name not in _NOT_DOCTOR_NAMES:
                return name
    return None


def treatment_matches_service(treatment: TreatmentNode, service: str) -> bool:
    """Word-overlap heuristic between a treatment name and a requested service."""
    name = normalize(treatment.display_name or treatment.full_name)
    if not name or not service:
        return False
    if service in name or name in service:
        return True
    service_words = set(service.split())
    return any(word in service_words for word in name.split() if len(word) > 2)


# ── Dispatcher ──────────────────────────────────────────────────────


class ResponseDispatcher:
    def __init__(self, aggregator: ContextAggregator, *, list_cap: int = TREATMENT_LIST_CAP):
        self._aggregator = aggregator
        self._list_cap = list_cap
        self._handlers: dict[IntentLabel, Handler] = {
            IntentLabel.COST_INQUIRY: self.handle_cost_inquiry,
            IntentLabel.TREATMENT_LIST: self.handle_treatment_list,
            IntentLabel.SPECIFIC_TREATMENT: self.handle_specific_treatment,
            IntentLabel.TREATMENT_SELECTION: self.handle_specific_treatment,
            IntentLabel.DOCTOR_INQUIRY: self.handle_doctor_inquiry,
            IntentLabel.APPOINTMENT_BOOKING: self.handle_appointment_booking,
            IntentLabel.CLINIC_INFO: self.handle_clinic_info,
            IntentLabel.GENERAL_INFO: self.handle_general_info,
            IntentLabel.OFF_TOPIC: self.handle_off_topic,
        }

    def handler_for(self, intent: IntentLabel) -> Handler:
        return self._handlers.get(intent, self.handle_default)

    async def dispatch(self, ctx: TurnContext) -> Reply:
        reply = await self.handler_for(ctx.intent)(ctx)
        reply.intent = ctx.intent
        return reply

    # ── LLM helper ───────────────────────────────────────────────────

    async def _llm_reply(self, ctx: TurnContext, system_prompt: str, fallback: str) -> Reply:
        if ctx.llm is None:
            return Reply(text=fallback)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": ctx.query},
        ]
        if ctx.stream:
            return Reply(tokens=ctx.llm.chat_stream(messages))
        try:
            response = await ctx.llm.chat(messages)
        except Exception as exc:
            logger.warning("LLM answer failed for %s (%s); using fallback", ctx.intent.value, type(exc).__name__)
            return Reply(text=fallback)
        return Reply(text=response.content.strip() or fallback)

    async def _specialists_line(self, node: TreatmentNode) -> str:
        if not node.doctor_ids:
            return ""
        doctors = await self._aggregator.get_doctors_by_ids(node.doctor_ids)
        if doctors:
            names = ", ".join(_doctor_title(d) for d in doctors)
            return f"👩‍⚕️ **Specialists:** {names}"
        return f"👩‍⚕️ **Specialists:** Doctor IDs {', '.join(str(i) for i in node.doctor_ids)}"

    # ── cost_inquiry ─────────────────────────────────────────────────

    async def handle_cost_inquiry(self, ctx: TurnContext) -> Reply:
        limit = extract_price_limit(ctx.query)
        if limit is not None:
            return self._price_limit_reply(ctx, limit)

        if not ctx.treatments:
            asked = strip_filler(ctx.query) or ctx.query.strip()
            return Reply(
                text=(
                    f"I don't have pricing information for **{asked}** right now. "
                    "Could you try the exact treatment name, or ask me to show all treatments?"
                ),
            )

        node = ctx.treatments[0]
        lines = []
        if node.has_price:
            lines.append(f"The cost of **{display_name(node)}** at our clinic is **{format_price(node)}**.")
        else:
            lines.append(f"Pricing for **{display_name(node)}** is shared after a consultation.")
        lines.append("💰 Source: clinic price list")
        specialists = await self._specialists_line(node)
        if specialists:
            lines.append(specialists)

        others = [n for n in ctx.treatments[1:SHOWN_TREATMENTS_CAP + 1] if n.has_price]
        if others:
            lines.append("\n**Related treatments:**")
            lines.extend(f"- {display_name(n)}: {format_price(n)}" for n in others)

        quote = None
        if not node.has_price:
            quote = display_name(node)
            lines.append("")
            lines.append(quote_cta_token(quote))
        return Reply(text="\n".join(lines), quote_cta=quote)

    def _price_limit_reply(self, ctx: TurnContext, limit: int) -> Reply:
        if not ctx.treatments:
            return Reply(
                text=(
                    f"I couldn't find any treatments priced under **₹{limit:,}**. "
                    "Many of our treatments are priced after a consultation. "
                    "Would you like to see the full list?"
                ),
            )
        shown = ctx.treatments[:PRICE_LIST_CAP]
        lines = [f"Here are treatments under **₹{limit:,}**:", ""]
        lines.extend(f"- **{display_name(n)}**: {format_price(n)}" for n in shown)
        if len(ctx.treatments) > len(shown):
            lines.append(f"\nShowing {len(shown)} of {len(ctx.treatments)} treatments.")
        return Reply(text="\n".join(lines))

    # ── treatment_list ───────────────────────────────────────────────

    async def handle_treatment_list(self, ctx: TurnContext) -> Reply:
        nodes = [n for n in ctx.treatments if n.label]
        if not nodes:
            return Reply(
                text=(
                    "I can't load our treatment list right now. "
                    f"Please try again shortly or call us on **{CLINIC_PHONE}**."
                ),
            )

        groups: dict[str, list[TreatmentNode]] = {"condition": [], "treatment": [], "other": []}
        for node in nodes:
            groups[node.category or "other"].append(node)

        headings = {
            "condition": "**Conditions we treat**",
            "treatment": "**Treatments**",
            "other": "**Other services**",
        }
        lines = ["Here are the services we offer:"]
        listed = 0
        for key in ("condition", "treatment", "other"):
            members = groups[key]
            if not members or listed >= self._list_cap:
                continue
            lines.append("")
            lines.append(headings[key])
            for node in members[: self._list_cap - listed]:
                price = format_price(node) if node.has_price else "Contact for Quote"
                lines.append(f"- {display_name(node)}: {price}")
                listed += 1

        if len(nodes) > listed:
            lines.append(f"\nShowing {listed} of {len(nodes)} treatments. Ask about any treatment by name for details.")
        return Reply(text="\n".join(lines))

    # ── specific_treatment / treatment_selection ─────────────────────

    async def handle_specific_treatment(self, ctx: TurnContext) -> Reply:
        if ctx.intent is IntentLabel.TREATMENT_SELECTION and is_selection_reply(ctx.query):
            return Reply(
                text=(
                    "Which treatment would you like to know more about? "
                    "Please type its name, for example \"laser hair reduction\"."
                ),
            )
        if not ctx.treatments:
            asked = strip_filler(ctx.query) or ctx.query.strip()
            return Reply(
                text=(
                    f"I couldn't find a treatment matching **{asked}**. "
                    "Ask me to show all treatments to see what we offer."
                ),
            )

        node = ctx.treatments[0]
        name = display_name(node)
        lines = [f"**{name}**"]
        if node.category:
            lines.append(f"Category: {node.category.title()}")
        if node.has_price:
            lines.append(f"💰 Price: **{format_price(node)}**")
        else:
            lines.append("💰 Price: shared after consultation")
        specialists = await self._specialists_line(node)
        if specialists:
            lines.append(specialists)

        quote = None
        if not node.has_price:
            quote = name
            lines.append("")
            lines.append(quote_cta_token(name))
        return Reply(text="\n".join(lines), quote_cta=quote)

    # ── doctor_inquiry ───────────────────────────────────────────────

    async def handle_doctor_inquiry(self, ctx: TurnContext) -> Reply:
        doctors = await self._aggregator.get_all_doctors()
        if not doctors:
            context = await self._aggregator.gather(ctx.intent)
            if not context.strip():
                return Reply(text=STATIC_CLINIC_DESCRIPTION)
            return await self._llm_reply(ctx, get_assistant_prompt(context=context), STATIC_CLINIC_DESCRIPTION)

        service = service_from_query(ctx.query)
        if service:
            return Reply(text=self._doctors_for_service(service, doctors, ctx.flat))

        name = named_doctor_from_query(ctx.query)
        if name:
            match = next((d for d in doctors if name in d.plain_name.lower()), None)
            if match is not None:
                return Reply(text=self._doctor_card(match, ctx.flat))
            return Reply(
                text=f"I couldn't find a doctor named **{name.title()}** at our clinic.\n\n"
                + self._doctor_listing(doctors),
            )

        return Reply(text=self._doctor_listing(doctors))

    def _doctors_for_service(self, service: str, doctors: list[DoctorRecord], flat: list[TreatmentNode]) -> str:
        lines = []
        for doctor in doctors:
            matched = [t for t in treatments_for_doctor(doctor.id, flat) if treatment_matches_service(t, service)]
            if matched:
                names = ", ".join(display_name(t) for t in matched[:3])
                lines.append(f"- **{_doctor_title(doctor)}** ({doctor.specialization}): {names}")
        if not lines:
            return (
                f"I couldn't find doctors specifically listed for **{service}**.\n\n"
                + self._doctor_listing(doctors)
            )
        return f"Doctors who perform **{service}**:\n\n" + "\n".join(lines)

    def _doctor_card(self, doctor: DoctorRecord, flat: list[TreatmentNode]) -> str:
        lines = [f"**{_doctor_title(doctor)}**", f"- Specialization: {doctor.specialization}"]
        if doctor.qualification:
            lines.append(f"- Qualification: {doctor.qualification}")
        if doctor.experience:
            lines.append(f"- Experience: {doctor.experience}")
        lines.append(f"- Availability: {'Available' if doctor.available else 'Currently unavailable'}")
        if doctor.about:
            about = doctor.about if len(doctor.about) <= 300 else doctor.about[:297] + "..."
            lines.append(f"\n{about}")

        treatments = treatments_for_doctor(doctor.id, flat)
        if treatments:
            lines.append("\n**Treatments:**")
            lines.extend(f"- {display_name(t)}" for t in treatments[:DOCTOR_CARD_TREATMENTS])
            if len(treatments) > DOCTOR_CARD_TREATMENTS:
                lines.append(f"And {len(treatments) - DOCTOR_CARD_TREATMENTS} more")
        return "\n".join(lines)

    def _doctor_listing(self, doctors: list[DoctorRecord]) -> str:
        available = [d for d in doctors if d.available] or doctors
        lines = ["Our doctors:", ""]
        lines.extend(f"- **{_doctor_title(d)}**: {d.specialization}" for d in available)
        lines.append("\nAsk me about any doctor by name for more details.")
        return "\n".join(lines)

    # ── appointment_booking ──────────────────────────────────────────

    async def handle_appointment_booking(self, ctx: TurnContext) -> Reply:
        draft = appointments.extract_appointment(ctx.query)
        if not appointments.is_complete(draft):
            errors = appointments.validation_errors(draft)
            return Reply(text=self._collecting_prompt(ctx.query, draft, errors), booking_cta=True)

        result = await self._aggregator.book_appointment(draft)
        if result.success:
            text = (
                f"✅ {result.message}\n\n"
                "**Booking details**\n"
                f"- Name: {draft.name}\n"
                f"- Email: {draft.email}\n"
                f"- Phone: {draft.phone}\n"
                f"- Date: {draft.date}\n"
                f"- Service: {draft.service}"
            )
        else:
            text = (
                f"❌ {result.message}\n\n"
                f"You can also contact our clinic directly at **{CLINIC_PHONE}**."
            )
        return Reply(text=text)

    @staticmethod
    def _collecting_prompt(query: str, draft: AppointmentDraft, errors: dict[str, str]) -> str:
        doctor = appointments.mentioned_doctor(query)
        if doctor:
            opening = f"I'd be happy to help you book an appointment with **Dr. {doctor}**!"
        else:
            opening = "I'd be happy to help you book an appointment!"

        if appointments.has_any_detail(draft):
            problems = [
                f"- {name.title()}" + ("" if reason == "missing" else f" ({reason})")
                for name, reason in errors.items()
            ]
            body = "Thanks! I still need the following details:\n" + "\n".join(problems)
        else:
            body = (
                "Please share the following details:\n"
                "- Name\n- Email\n- Phone\n- Date (YYYY-MM-DD)\n- Service"
            )
        example = (
            "For example: *Name: Priya, Email: priya@example.com, Phone: 9876543210, "
            "Date: 2025-01-10, Service: Consultation*"
        )
        return f"{opening}\n\n{body}\n\n{example}"

    # ── clinic_info / general_info ───────────────────────────────────

    async def handle_clinic_info(self, ctx: TurnContext) -> Reply:
        info = await self._aggregator.get_clinic_info()
        context = await self._aggregator.gather(ctx.intent)
        if info is None and not context.strip():
            return Reply(text=STATIC_CLINIC_DESCRIPTION)

        card = ""
        if info is not None:
            lines = [f"**{info.name}**"]
            if info.address:
                lines.append(f"📍 {info.address}")
            if info.phone:
                lines.append(f"📞 {info.phone}")
            if info.email:
                lines.append(f"✉️ {info.email}")
            if info.working_hours:
                lines.append(f"🕒 {info.working_hours}")
            card = "\n".join(lines)

        prompt = get_assistant_prompt(context="\n\n".join(part for part in (card, context) if part))
        return await self._llm_reply(ctx, prompt, card or STATIC_CLINIC_DESCRIPTION)

    async def handle_general_info(self, ctx: TurnContext) -> Reply:
        context = await self._aggregator.gather(ctx.intent)
        if not context.strip():
            return Reply(text=STATIC_CLINIC_DESCRIPTION)
        return await self._llm_reply(ctx, get_assistant_prompt(context=context), GENERAL_INFO_FALLBACK)

    # ── off_topic ────────────────────────────────────────────────────

    async def handle_off_topic(self, ctx: TurnContext) -> Reply:
        index = zlib.crc32(ctx.query.encode("utf-8")) % len(OFF_TOPIC_REPLIES)
        return Reply(text=OFF_TOPIC_REPLIES[index])

    # ── default (comparison, other, unknown) ─────────────────────────

    async def handle_default(self, ctx: TurnContext) -> Reply:
        treatments_json = ""
        if ctx.treatments:
            treatments_json = json.dumps(
                [t.summary() for t in ctx.treatments[:LLM_TREATMENTS_CAP]], ensure_ascii=False,
            )
        note = ""
        limit = extract_price_limit(ctx.query)
        if limit is not None and not ctx.treatments:
            note = f"No treatments in the clinic price list are priced under ₹{limit}. Say so plainly."
        prompt = get_assistant_prompt(treatments_json=treatments_json, note=note)
        return await self._llm_reply(ctx, prompt, FALLBACK_REPLY)
