"""Prompt templates and fixed reply texts for the clinic assistant."""

from __future__ import annotations

from datetime import UTC, datetime

from clinic_assistant.config import CLINIC_NAME, CLINIC_PHONE
from clinic_assistant.models import IntentLabel

# ── Intent classification ───────────────────────────────────────────

CLASSIFIER_PROMPT = """You classify messages sent to the chat assistant of {clinic}, a dermatology and aesthetics clinic.

Return ONLY a JSON object of the form {{"intent": "<label>"}} where <label> is one of:
{labels}

Label guide:
- cost_inquiry: asks what a treatment costs, or for treatments within a budget
- treatment_list: wants to see the services or treatments offered
- doctor_inquiry: asks about doctors, a named doctor, or who performs a treatment
- specific_treatment: asks about one named treatment without asking its price
- comparison: compares two or more treatments
- appointment_booking: wants to book, or is supplying booking details
- clinic_info: location, timings, contact details of the clinic
- general_info: medical or skin-health questions
- treatment_selection: picks an item from a list shown earlier ("2", "the first one")
- off_topic: anything unrelated to the clinic or health
- other: greetings, thanks, or anything else
"""

CLASSIFIER_LABELS = [label.value for label in IntentLabel if label is not IntentLabel.ERROR]


def get_classifier_prompt() -> str:
    return CLASSIFIER_PROMPT.format(clinic=CLINIC_NAME, labels=", ".join(CLASSIFIER_LABELS))


# ── Answer generation ───────────────────────────────────────────────

ASSISTANT_PROMPT_TEMPLATE = """You are **HealthLantern AI**, the assistant of **{clinic}**, a dermatology and aesthetics clinic.
Today is **{current_date}**.

## Rules
- Answer only questions about the clinic, its treatments, its doctors and skin or hair health.
- Use ONLY prices that appear in the data below. Never invent or estimate a price.
  If a treatment has no price, say pricing is shared on consultation.
- Never diagnose. For symptoms, suggest a consultation with one of the clinic's doctors.
- Keep replies short: two or three paragraphs, bullet points for lists.
- For appointments the patient can type their name, email, phone, date and service,
  or call the clinic on {phone}.

{sections}"""


def get_assistant_prompt(*, treatments_json: str = "", context: str = "", note: str = "") -> str:
    """Build the answering system prompt with whatever data the handler gathered."""
    sections = []
    if treatments_json:
        sections.append(f"## Relevant treatments (from the clinic system)\n{treatments_json}")
    if context:
        sections.append(f"## Clinic content\n{context}")
    if note:
        sections.append(f"## Note\n{note}")
    return ASSISTANT_PROMPT_TEMPLATE.format(
        clinic=CLINIC_NAME,
        phone=CLINIC_PHONE,
        current_date=datetime.now(UTC).strftime("%A, %d %B %Y"),
        sections="\n\n".join(sections),
    )


# ── Fixed replies ───────────────────────────────────────────────────

FALLBACK_REPLY = (
    "I'm sorry, I couldn't process that just now. Please try again, "
    f"or call {CLINIC_NAME} on {CLINIC_PHONE}."
)

STREAM_ERROR_REPLY = "Sorry, something went wrong while answering. Please try again."

OFF_TOPIC_REPLIES = [
    "I'm here to help with questions about our clinic's treatments, doctors and appointments. "
    "Is there a skin or hair concern I can help you with?",
    "That's outside what I can help with. I can tell you about our treatments, prices "
    "and doctors, or help you book an appointment.",
    "I specialise in our clinic's services. Would you like to know about a treatment, "
    "its cost, or which doctor performs it?",
    "I can only answer questions about our clinic. Try asking about a treatment, "
    "our doctors, or how to book a consultation.",
]

STATIC_CLINIC_DESCRIPTION = (
    f"**{CLINIC_NAME}** is a dermatology and aesthetics clinic offering skin, hair and "
    "anti-ageing treatments by experienced dermatologists.\n\n"
    f"📞 Call us on **{CLINIC_PHONE}** for timings, directions or to book a consultation."
)

GENERAL_INFO_FALLBACK = (
    "I don't have detailed information on that right now. Our dermatologists can "
    f"advise you in a consultation. Call **{CLINIC_PHONE}** or ask me to book an appointment."
)
