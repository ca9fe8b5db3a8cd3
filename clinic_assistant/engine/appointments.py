"""Appointment detail extraction and validation.

Patients type booking details inline, e.g.::

    Name: Priya, Email: priya@x.com, Phone: 9876543210, Date: 2025-01-10, Service: Consultation

A draft is *ready* only when name, email, phone, date and service are all
present and valid; otherwise the dispatcher keeps *collecting* and tells
the patient which fields are missing or malformed.
"""

from __future__ import annotations

import logging
import re
from datetime import date

from clinic_assistant.models import AppointmentDraft

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "email", "phone", "date", "service")
MIN_PHONE_DIGITS = 10

# RFC 5322-ish: local part, @, one or more dot-separated labels
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_FIELD_PATTERNS = {
    "name": re.compile(r"\b(?:name[:\s]+|my name is\s+)([a-zA-Z][a-zA-Z\s.]*?)\s*(?:,|$|\s+email)", re.I | re.M),
    "email": re.compile(r"\bemail[:\s]+([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})", re.I),
    "phone": re.compile(r"\b(?:phone|mobile)(?:\s*number)?[:\s]+(\+?\d[\d\s-]{8,}\d)", re.I),
    "date": re.compile(r"\bdate[:\s]+(\d{4}-\d{2}-\d{2})", re.I),
    "service": re.compile(r"\bservice[:\s]+([^,\n]+)", re.I),
    "message": re.compile(r"\bmessage[:\s]+([^,\n]+)", re.I),
}

_DOCTOR_MENTION_RE = re.compile(r"(?:\bwith\s+(?:dr\.?\s+)?|\bdr\.?\s+)([a-z]+(?:\s+[a-z]+)?)", re.I)
_NOT_A_NAME = {"the", "a", "an", "my", "your", "you", "me", "appointment"}


def extract_appointment(message: str) -> AppointmentDraft:
    """Pull labelled booking fields out of *message*; absent fields stay ``None``."""
    values: dict[str, str] = {}
    for field_name, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(message or "")
        if match:
            value = match.group(1).strip()
            if value:
                values[field_name] = value
    if "phone" in values:
        values["phone"] = re.sub(r"[\s-]", "", values["phone"])
    return AppointmentDraft(**values)


def mentioned_doctor(message: str) -> str | None:
    """Doctor name in "book with Dr Niti" style requests, if any."""
    match = _DOCTOR_MENTION_RE.search(message or "")
    if not match:
        return None
    name = match.group(1).strip()
    if name.lower().split()[0] in _NOT_A_NAME:
        return None
    return name.title()


# ── Validation ──────────────────────────────────────────────────────


def _validate_email(email: str) -> str | None:
    if not _EMAIL_RE.match(email.strip()):
        return f'"{email}" does not look like a valid email address'
    return None


def _validate_phone(phone: str) -> str | None:
    digits = re.sub(r"\D", "", phone)
    if len(digits) < MIN_PHONE_DIGITS:
        return f"phone number needs at least {MIN_PHONE_DIGITS} digits"
    return None


def _validate_date(value: str) -> str | None:
    try:
        date.fromisoformat(value)
    except ValueError:
        return f'"{value}" is not a valid date (use YYYY-MM-DD)'
    return None


_VALIDATORS = {
    "email": _validate_email,
    "phone": _validate_phone,
    "date": _validate_date,
}


def validation_errors(draft: AppointmentDraft) -> dict[str, str]:
    """Map of field -> problem for every required field that is absent or invalid."""
    errors: dict[str, str] = {}
    for field_name in REQUIRED_FIELDS:
        value = getattr(draft, field_name)
        if not value or not value.strip():
            errors[field_name] = "missing"
            continue
        validator = _VALIDATORS.get(field_name)
        problem = validator(value) if validator else None
        if problem:
            errors[field_name] = problem
    return errors


def is_complete(draft: AppointmentDraft) -> bool:
    return not validation_errors(draft)


def has_any_detail(draft: AppointmentDraft) -> bool:
    return any(getattr(draft, field_name) for field_name in REQUIRED_FIELDS)
