"""Shared test fixtures for the clinic assistant test suite."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("CRM_AUTH_TOKEN", "test-crm-token-123")
    os.environ.setdefault("MISTRAL_API_KEY", "test-mistral-key-456")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("TAVILY_API_KEY", None)


# ── Fake collaborators ───────────────────────────────────────────────


class FakeLLM:
    """Scripted chat model that records every call."""

    def __init__(self, reply: str = "", *, tokens: list[str] | None = None, error: Exception | None = None):
        self.reply = reply
        self.tokens = tokens if tokens is not None else reply.split(" ")
        self.error = error
        self.calls: list[dict] = []
        self.stream_calls: list[list[dict]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls) + len(self.stream_calls)

    async def chat(self, messages, *, json_mode=False):
        from clinic_assistant.services.llm_provider import ChatResponse

        self.calls.append({"messages": messages, "json_mode": json_mode})
        if self.error is not None:
            raise self.error
        return ChatResponse(content=self.reply)

    async def chat_stream(self, messages) -> AsyncIterator[str]:
        self.stream_calls.append(messages)
        if self.error is not None:
            raise self.error
        for index, token in enumerate(self.tokens):
            yield token if index == 0 else f" {token}"


@pytest.fixture
def fake_llm():
    """Factory fixture for scripted LLMs."""
    return FakeLLM


@pytest.fixture
def treatment_records() -> list[dict]:
    """A small CRM treatment forest, in the CRM's wire format."""
    return [
        {
            "id": 1, "parent_id": 0, "t_name": "Skin", "name": "Skin (C)", "price": "",
            "doctors": "[]",
            "children": [
                {"id": 11, "parent_id": 1, "t_name": "Acne Treatment", "name": "Acne Treatment (T)",
                 "price": "2500", "doctors": "[101]", "children": []},
                {"id": 12, "parent_id": 1, "t_name": "Chemical Peel", "name": "Chemical Peel (T)",
                 "price": "1000", "doctors": "[101,102]", "children": []},
            ],
        },
        {
            "id": 2, "parent_id": 0, "t_name": "Anti Aging", "name": "Anti Aging (C)", "price": "",
            "doctors": "[]",
            "children": [
                {"id": 21, "parent_id": 2, "t_name": "Anti Wrinkle Injection",
                 "name": "Anti Wrinkle Injection (T)", "price": "3000", "doctors": "[102]", "children": []},
                {"id": 22, "parent_id": 2, "t_name": "HIFU", "name": "HIFU (T)", "price": "",
                 "doctors": "[102]", "children": []},
            ],
        },
        {
            "id": 3, "parent_id": 0, "t_name": "Laser Hair Reduction", "name": "Laser Hair Reduction (T)",
            "price": "999", "doctors": [101], "children": [],
        },
    ]


@pytest.fixture
def treatments(treatment_records):
    from clinic_assistant.models import TreatmentNode

    return [TreatmentNode.model_validate(record) for record in treatment_records]


@pytest.fixture
def doctors():
    from clinic_assistant.models import DoctorRecord

    return [
        DoctorRecord(id=101, name="Dr. Niti Gaur", specialization="Dermatologist",
                     qualification="MD", experience="15 years"),
        DoctorRecord(id=102, name="Dr. Arjun Rao", specialization="Aesthetic Physician"),
    ]


@pytest.fixture
def mock_crm(treatments, doctors):
    """AsyncMock CRM client returning the fixture data."""
    from clinic_assistant.models import BookingResult, ClinicInfo

    crm = MagicMock()
    crm.get_all_treatments = AsyncMock(return_value=treatments)
    crm.get_all_doctors = AsyncMock(return_value=doctors)
    crm.get_clinic_info = AsyncMock(
        return_value=ClinicInfo(name="Citrine Clinic", address="Sector 50, Gurugram", phone="9654122458"),
    )
    crm.book_appointment = AsyncMock(
        return_value=BookingResult(success=True, message="Appointment request submitted successfully!"),
    )
    crm.aclose = AsyncMock()
    return crm


@pytest.fixture
def mock_web():
    from clinic_assistant.services.web_content import WebContent

    web = MagicMock()
    web.extract_content = AsyncMock(
        return_value=[WebContent(url="https://example.com", content="Citrine Clinic treats skin and hair.")],
    )
    web.crawl_website = AsyncMock(
        return_value=WebContent(url="https://example.com", content="Open Mon-Sat 10am to 7pm."),
    )
    web.search_and_extract = AsyncMock(
        return_value=[WebContent(url="https://a.test", content="Acne can be treated with peels.")],
    )
    web.aclose = AsyncMock()
    return web


class FixedClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def aggregator(mock_crm, mock_web, clock):
    from clinic_assistant.engine.aggregator import ContextAggregator
    from clinic_assistant.services.cache import TTLCache

    return ContextAggregator(mock_crm, mock_web, TTLCache(ttl_seconds=300, clock=clock))
