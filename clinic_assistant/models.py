"""Domain records shared by the engine, the collaborator clients and the API.

Collaborator payloads are normalized here, at the ingestion boundary:

* ``TreatmentNode.doctor_ids`` accepts the CRM's JSON-encoded string
  (``"[1,2,3]"``) or a native list and degrades to ``[]`` when malformed.
* ``DoctorRecord.from_crm`` derives ``available`` from ``status == "active"``.
* ``ClinicInfo.from_crm`` maps the organization payload's field variants.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


# ── Doctor id normalization ─────────────────────────────────────────


def parse_doctor_ids(raw: Any) -> list[int]:
    """Normalize a treatment's ``doctors`` field to a list of integer ids.

    ``"[1,2,3]"`` and ``[1, 2, 3]`` both yield ``[1, 2, 3]``.  Anything that
    is not a list (after JSON decoding) yields ``[]``; individual entries that
    are not integer-like are skipped.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.debug("Unparseable doctor id list: %r", raw[:50])
            return []
    if not isinstance(raw, (list, tuple)):
        return []

    ids: list[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            continue
    return ids


# ── Treatments ──────────────────────────────────────────────────────


class TreatmentNode(BaseModel):
    """One node of the CRM treatment tree.

    ``full_name`` carries a category marker: ``(C)`` for a condition,
    ``(T)`` for a treatment.  An empty ``price`` means "quote on request".
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int
    parent_id: int = 0
    display_name: str = Field("", alias="t_name")
    full_name: str = Field("", alias="name")
    price: str = ""
    doctor_ids: list[int] = Field(default_factory=list, alias="doctors")
    children: list[TreatmentNode] = Field(default_factory=list)

    # Filled in only for treatments that are shown to the patient.
    doctor_names: list[str] | None = None
    doctor_count: int | None = None

    @field_validator("doctor_ids", mode="before")
    @classmethod
    def _normalize_doctor_ids(cls, value: Any) -> list[int]:
        return parse_doctor_ids(value)

    @field_validator("price", "display_name", "full_name", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("parent_id", mode="before")
    @classmethod
    def _coerce_parent(cls, value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    @field_validator("children", mode="before")
    @classmethod
    def _coerce_children(cls, value: Any) -> Any:
        return value or []

    @property
    def has_price(self) -> bool:
        return bool(self.price)

    @property
    def price_value(self) -> int | None:
        """Integer price, or ``None`` when the price is empty or non-numeric."""
        cleaned = re.sub(r"[₹,\s]|Rs\.?", "", self.price)
        if not cleaned.isdigit():
            return None
        return int(cleaned)

    @property
    def category(self) -> str | None:
        if "(C)" in self.full_name:
            return "condition"
        if "(T)" in self.full_name:
            return "treatment"
        return None

    @property
    def label(self) -> str:
        """Best human-facing name for the node."""
        return self.display_name or self.full_name or f"Treatment {self.id}"

    def summary(self) -> dict[str, Any]:
        """Flat dict without ``children``, used for API payloads and LLM context."""
        data = self.model_dump(by_alias=True, exclude={"children"}, exclude_none=True)
        return data


TreatmentNode.model_rebuild()


# ── Doctors and clinic ──────────────────────────────────────────────

_DR_PREFIX_RE = re.compile(r"^\s*dr\.?\s+", re.IGNORECASE)


def clean_name(name: str) -> str:
    """Strip a leading ``Dr.`` / ``Dr`` title from a doctor's name."""
    return _DR_PREFIX_RE.sub("", name or "").strip()


class DoctorRecord(BaseModel):
    id: int
    name: str
    specialization: str = "General Practitioner"
    available: bool = True
    qualification: str = ""
    experience: str = ""
    gender: str = ""
    phone: str = ""
    email: str = ""
    about: str = ""
    image: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    services: str = ""

    @property
    def plain_name(self) -> str:
        return clean_name(self.name)

    @classmethod
    def from_crm(cls, raw: dict[str, Any]) -> DoctorRecord:
        """Map a CRM staff record, filling the CRM's habitual gaps."""
        doctor_id = int(raw["id"])
        return cls(
            id=doctor_id,
            name=raw.get("name") or f"Doctor {doctor_id}",
            specialization=(
                raw.get("specialization") or raw.get("specialty") or "General Practitioner"
            ),
            available=raw.get("status") == "active",
            qualification=str(raw.get("qualification") or ""),
            experience=str(raw.get("experience") or ""),
            gender=str(raw.get("gender") or ""),
            phone=str(raw.get("phone") or ""),
            email=str(raw.get("email") or ""),
            about=str(raw.get("about_us") or raw.get("about") or ""),
            image=str(raw.get("image") or raw.get("patient_image") or ""),
            address=str(raw.get("street_address") or raw.get("address") or ""),
            city=str(raw.get("city") or ""),
            state=str(raw.get("state") or ""),
            services=str(raw.get("services") or ""),
        )


class ClinicInfo(BaseModel):
    name: str
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    working_hours: str | None = None
    services: list[str] = Field(default_factory=list)

    @classmethod
    def from_crm(cls, org: dict[str, Any]) -> ClinicInfo:
        services = org.get("services") or []
        if isinstance(services, str):
            services = [s.strip() for s in services.split(",") if s.strip()]
        return cls(
            name=org.get("org_name") or org.get("name") or org.get("organization_name")
            or "HealthLantern Medical Center",
            address=org.get("org_address") or org.get("address"),
            phone=org.get("org_pri_phone_no") or org.get("phone"),
            email=org.get("org_email") or org.get("email"),
            working_hours=org.get("working_hours") or org.get("timing") or "Mon-Sat: 9 AM - 6 PM",
            services=list(services),
        )


# ── Appointments ────────────────────────────────────────────────────


class AppointmentDraft(BaseModel):
    """Booking fields extracted from a patient message.

    Every field is optional while the draft is being collected; the
    validity rules live in :mod:`clinic_assistant.engine.appointments`.
    """

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    date: str | None = None
    service: str | None = None
    message: str | None = None
    clinic_location_id: int = 1
    app_source: str | None = None


class BookingResult(BaseModel):
    success: bool
    message: str


# ── Intents ─────────────────────────────────────────────────────────


class IntentLabel(str, Enum):
    COST_INQUIRY = "cost_inquiry"
    TREATMENT_LIST = "treatment_list"
    DOCTOR_INQUIRY = "doctor_inquiry"
    SPECIFIC_TREATMENT = "specific_treatment"
    COMPARISON = "comparison"
    APPOINTMENT_BOOKING = "appointment_booking"
    CLINIC_INFO = "clinic_info"
    GENERAL_INFO = "general_info"
    TREATMENT_SELECTION = "treatment_selection"
    OFF_TOPIC = "off_topic"
    OTHER = "other"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: Any) -> IntentLabel:
        """Map free-form text to a label, defaulting to ``OTHER``."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.OTHER


# ── Replies and stream chunks ───────────────────────────────────────


@dataclass
class Reply:
    """Outcome of one intent handler.

    Exactly one of ``text`` / ``tokens`` carries the body: ``tokens`` is a
    live LLM token stream used only in streaming mode.
    """

    text: str = ""
    intent: IntentLabel = IntentLabel.OTHER
    treatments_to_show: list[TreatmentNode] | None = None
    booking_cta: bool = False
    quote_cta: str | None = None
    tokens: AsyncIterator[str] | None = None


class ChunkType(str, Enum):
    METADATA = "metadata"
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


@dataclass
class StreamChunk:
    type: ChunkType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in (ChunkType.DONE, ChunkType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.payload}


class ChatResult(BaseModel):
    """Synchronous reply returned by ``ClinicAssistant.process_query``."""

    message: str
    intent: IntentLabel
    treatments: list[dict[str, Any]] | None = None
    booking_cta: bool = False
    quote_cta: str | None = None
