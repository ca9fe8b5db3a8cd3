"""Tests for appointment detail extraction and validation."""

from __future__ import annotations

import pytest

from clinic_assistant.engine.appointments import (
    extract_appointment,
    has_any_detail,
    is_complete,
    mentioned_doctor,
    validation_errors,
)
from clinic_assistant.models import AppointmentDraft

SAMPLE = "Name: Priya, Email: priya@x.com, Phone: 9876543210, Date: 2025-01-10, Service: Consultation"


class TestExtraction:
    def test_sample_message_is_complete(self):
        draft = extract_appointment(SAMPLE)
        assert draft.name == "Priya"
        assert draft.email == "priya@x.com"
        assert draft.phone == "9876543210"
        assert draft.date == "2025-01-10"
        assert draft.service == "Consultation"
        assert is_complete(draft)

    def test_missing_phone_is_incomplete(self):
        draft = extract_appointment(SAMPLE.replace("Phone: 9876543210, ", ""))
        assert draft.phone is None
        assert not is_complete(draft)
        assert validation_errors(draft) == {"phone": "missing"}

    def test_phone_separators_are_removed(self):
        draft = extract_appointment("mobile: 98765-43210")
        assert draft.phone == "9876543210"

    def test_my_name_is(self):
        draft = extract_appointment("my name is Rahul Verma, email rahul@example.com")
        assert draft.name == "Rahul Verma"
        assert draft.email == "rahul@example.com"

    def test_optional_message(self):
        draft = extract_appointment(SAMPLE + ", Message: prefer mornings")
        assert draft.message == "prefer mornings"

    def test_plain_request_has_no_details(self):
        draft = extract_appointment("I want to book an appointment")
        assert not has_any_detail(draft)


class TestValidation:
    def test_invalid_email(self):
        draft = AppointmentDraft(name="A", email="nope", phone="9876543210", date="2025-01-10", service="X")
        assert "email" in validation_errors(draft)

    def test_short_phone(self):
        draft = AppointmentDraft(name="A", email="a@b.co", phone="12345", date="2025-01-10", service="X")
        assert "phone" in validation_errors(draft)

    @pytest.mark.parametrize("value", ["2025-02-30", "10/01/2025", "tomorrow"])
    def test_invalid_date(self, value):
        draft = AppointmentDraft(name="A", email="a@b.co", phone="9876543210", date=value, service="X")
        assert list(validation_errors(draft)) == ["date"]

    def test_blank_field_is_missing(self):
        draft = AppointmentDraft(name="  ", email="a@b.co", phone="9876543210", date="2025-01-10", service="X")
        assert validation_errors(draft) == {"name": "missing"}


class TestMentionedDoctor:
    def test_with_dr(self):
        assert mentioned_doctor("book an appointment with Dr Niti") == "Niti"

    def test_no_doctor(self):
        assert mentioned_doctor("book an appointment") is None

    def test_with_article_is_ignored(self):
        assert mentioned_doctor("appointment with the dermatologist") is None
