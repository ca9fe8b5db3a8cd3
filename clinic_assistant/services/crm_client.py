"""Async HTTP client for the HealthLantern clinic CRM.

Endpoints (all under ``CRM_BASE_URL``):

* ``GET  /get_tree_list_for_treatment_chatboard/<key>``  treatment forest
* ``GET  /get_staff_List_chatboard/<key>``               doctors
* ``GET  /organization_chatboard/<clinic key>``          clinic organization
* ``POST /Appointment_form_data_put``                    booking (form encoded)

Reads are retried with exponential backoff on timeouts, connection errors
and 5xx responses.  The booking POST is sent exactly once: a retried
booking could create a duplicate lead in the CRM.

Every public method degrades instead of raising: ``[]`` for lists,
``None`` for clinic info and a failed :class:`BookingResult` for bookings.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import httpx

from clinic_assistant.config import (
    CLINIC_PHONE,
    CRM_APP_SOURCE,
    CRM_AUTH_TOKEN,
    CRM_BASE_URL,
    CRM_CLINIC_KEY,
    CRM_TIMEOUT_SECONDS,
    CRM_TREATMENTS_KEY,
)
from clinic_assistant.models import (
    AppointmentDraft,
    BookingResult,
    ClinicInfo,
    DoctorRecord,
    TreatmentNode,
)
from clinic_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0

USER_AGENT = "HealthLantern-ChatBot/1.0"
BOOKING_SUCCESS_MARKER = "Lead enquiry created successfully"
DEFAULT_BOOKING_MESSAGE = "Appointment booking via chatbot"

# The clinic is dermatology / aesthetics only; the shared CRM tree also
# carries dental items that must never be offered.
_EXCLUDED_TREATMENT_RE = re.compile(
    r"\b(tooth|teeth|dental|dentist|whiten|whitening|oral|root canal|extraction)\b",
    re.IGNORECASE,
)


class CRMAPIError(Exception):
    """Raised when a CRM call fails after all retries or returns an unusable payload."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# ── Payload helpers ─────────────────────────────────────────────────


def _unwrap_list(payload: Any) -> list[dict[str, Any]]:
    """Extract the record list from the CRM's assorted response envelopes."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        inner = payload.get("data")
        if isinstance(inner, list):
            return inner
        if isinstance(inner, dict) and isinstance(inner.get("data"), list):
            return inner["data"]
    raise CRMAPIError("CRM response format is not as expected")


def _drop_excluded(nodes: list[TreatmentNode]) -> list[TreatmentNode]:
    kept = []
    for node in nodes:
        if _EXCLUDED_TREATMENT_RE.search(f"{node.display_name} {node.full_name}"):
            continue
        node.children = _drop_excluded(node.children)
        kept.append(node)
    return kept


class CRMClient:
    """Thin async wrapper around the clinic CRM REST API."""

    def __init__(
        self,
        auth_token: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = CRM_TIMEOUT_SECONDS,
    ):
        self._auth_token = auth_token or CRM_AUTH_TOKEN
        self._base_url = (base_url or CRM_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        retries: int = MAX_RETRIES,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                with metrics.track("crm", f"{method} {path.split('/')[1]}"):
                    response = await self._client.request(method, path, data=data)
                    if response.status_code >= 400:
                        raise CRMAPIError(
                            f"CRM error {response.status_code}: {response.text[:200]}",
                            status_code=response.status_code,
                        )
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "CRM attempt %d/%d failed (%s)", attempt, retries, type(exc).__name__,
                )
            except CRMAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning("CRM server error %s on attempt %d/%d", exc.status_code, attempt, retries)
                else:
                    raise  # 4xx errors are not retried

            if attempt < retries:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CRMAPIError(f"CRM request failed after {retries} attempt(s): {last_error}")

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError as exc:
            raise CRMAPIError(f"CRM returned non-JSON body for {path}") from exc

    # ── Public API methods ───────────────────────────────────────────

    async def get_all_treatments(self) -> list[TreatmentNode]:
        """Treatment forest with dental items removed; ``[]`` on failure."""
        try:
            payload = await self._get_json(f"/get_tree_list_for_treatment_chatboard/{CRM_TREATMENTS_KEY}")
            records = _unwrap_list(payload)
        except (CRMAPIError, httpx.HTTPError) as exc:
            logger.warning("Treatment fetch failed: %s", exc)
            return []

        roots: list[TreatmentNode] = []
        for record in records:
            try:
                roots.append(TreatmentNode.model_validate(record))
            except ValueError:
                logger.warning("Skipping malformed treatment record id=%s", record.get("id"))
        return _drop_excluded(roots)

    async def get_all_doctors(self) -> list[DoctorRecord]:
        try:
            payload = await self._get_json(f"/get_staff_List_chatboard/{CRM_TREATMENTS_KEY}")
            records = _unwrap_list(payload)
        except (CRMAPIError, httpx.HTTPError) as exc:
            logger.warning("Doctor fetch failed: %s", exc)
            return []

        doctors = []
        for record in records:
            try:
                doctors.append(DoctorRecord.from_crm(record))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed doctor record: %r", str(record)[:100])
        return doctors

    async def get_clinic_info(self) -> ClinicInfo | None:
        try:
            payload = await self._get_json(f"/organization_chatboard/{CRM_CLINIC_KEY}")
        except (CRMAPIError, httpx.HTTPError) as exc:
            logger.warning("Clinic info fetch failed: %s", exc)
            return None

        if isinstance(payload, dict) and payload.get("success") and isinstance(payload.get("organization"), dict):
            return ClinicInfo.from_crm(payload["organization"])
        logger.info("Clinic info payload had no organization block")
        return None

    async def book_appointment(self, draft: AppointmentDraft) -> BookingResult:
        """Submit a booking lead.  Sent once, never retried."""
        form = {
            "name": draft.name or "",
            "email": draft.email or "",
            "phone": draft.phone or "",
            "date": draft.date or "",
            "service": draft.service or "",
            "clinic_location_id": str(draft.clinic_location_id or 1),
            "message": draft.message or DEFAULT_BOOKING_MESSAGE,
            "app_source": draft.app_source or CRM_APP_SOURCE,
            "auth_token": self._auth_token,
        }
        try:
            response = await self._request("POST", "/Appointment_form_data_put", data=form, retries=1)
        except (CRMAPIError, httpx.HTTPError) as exc:
            logger.error("Booking request failed: %s", exc)
            return BookingResult(
                success=False,
                message="Unable to book appointment at this time. Please try again later.",
            )

        text = response.text or ""
        if not text.strip():
            return BookingResult(
                success=False, message="Empty response from booking system. Please try again.",
            )
        try:
            body = response.json()
        except ValueError:
            logger.error("Unparseable booking response: %r", text[:200])
            return BookingResult(
                success=False,
                message=f"Invalid response from booking system. Please contact us directly at {CLINIC_PHONE}.",
            )

        status = body.get("statusCode") if isinstance(body, dict) else None
        if status == 200 or BOOKING_SUCCESS_MARKER in text:
            return BookingResult(
                success=True,
                message=(
                    "Appointment request submitted successfully! "
                    "Our team will contact you shortly to confirm your appointment."
                ),
            )
        message = body.get("message") if isinstance(body, dict) else None
        return BookingResult(
            success=False,
            message=message or f"Failed to book appointment. Please contact us at {CLINIC_PHONE}.",
        )


# ── Module-level singleton ──────────────────────────────────────────

_crm_client: CRMClient | None = None


def get_crm_client() -> CRMClient:
    """Return the shared CRMClient, creating it on first use."""
    global _crm_client
    if _crm_client is None:
        _crm_client = CRMClient()
    return _crm_client
