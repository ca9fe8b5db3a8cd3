"""Context aggregator: gathers CRM records and clinic content for one reply.

Sources are isolated from one another.  A failing source contributes an
empty result and never aborts the reply.  Long-form content goes through
the shared :class:`TTLCache`; CRM records are fetched fresh per request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from clinic_assistant.config import CLINIC_SITE_URL, CONTEXT_BUDGET_CHARS
from clinic_assistant.models import (
    AppointmentDraft,
    BookingResult,
    ClinicInfo,
    DoctorRecord,
    IntentLabel,
    TreatmentNode,
)
from clinic_assistant.services.cache import TTLCache
from clinic_assistant.services.web_content import WebContent, load_static_clinic_content

logger = logging.getLogger(__name__)

LIVE_DATA_SEPARATOR = "\n\n--- Live Website Data ---\n"
CLINIC_CONTENT_KEY = "clinic_content"
LIVE_SITE_KEY = "live_site"

_CONTENT_INTENTS = {
    IntentLabel.CLINIC_INFO,
    IntentLabel.GENERAL_INFO,
    IntentLabel.DOCTOR_INQUIRY,
}


class ClinicDirectory(Protocol):
    async def get_all_treatments(self) -> list[TreatmentNode]: ...
    async def get_all_doctors(self) -> list[DoctorRecord]: ...
    async def get_clinic_info(self) -> ClinicInfo | None: ...
    async def book_appointment(self, draft: AppointmentDraft) -> BookingResult: ...


class ContentSource(Protocol):
    async def extract_content(self, urls: list[str]) -> list[WebContent]: ...
    async def crawl_website(self, url: str) -> WebContent: ...
    async def search_and_extract(self, query: str, max_results: int = 3) -> list[WebContent]: ...


def combine_contexts(primary: str, secondary: str | None, budget: int = CONTEXT_BUDGET_CHARS) -> str:
    """Merge two content blobs into at most *budget* characters.

    *primary* keeps up to half the budget; *secondary* follows a separator
    and fills what is left.  *secondary* is dropped when empty or identical
    to *primary*.
    """
    combined = (primary or "")[: budget // 2]
    if secondary and secondary != primary:
        remaining = budget - len(combined) - len(LIVE_DATA_SEPARATOR)
        if remaining > 0:
            combined += LIVE_DATA_SEPARATOR + secondary[:remaining]
    return combined[:budget]


class ContextAggregator:
    def __init__(
        self,
        crm: ClinicDirectory,
        web: ContentSource,
        cache: TTLCache | None = None,
        *,
        site_url: str = CLINIC_SITE_URL,
        budget: int = CONTEXT_BUDGET_CHARS,
    ):
        self._crm = crm
        self._web = web
        self._cache = cache if cache is not None else TTLCache()
        self._site_url = site_url
        self._budget = budget

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def aclose(self) -> None:
        for client in (self._crm, self._web):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()

    # ── CRM passthroughs ─────────────────────────────────────────────

    async def get_treatment_forest(self) -> list[TreatmentNode]:
        try:
            return await self._crm.get_all_treatments()
        except Exception:
            logger.exception("Treatment source failed")
            return []

    async def get_all_doctors(self) -> list[DoctorRecord]:
        try:
            return await self._crm.get_all_doctors()
        except Exception:
            logger.exception("Doctor source failed")
            return []

    async def get_clinic_info(self) -> ClinicInfo | None:
        try:
            return await self._crm.get_clinic_info()
        except Exception:
            logger.exception("Clinic info source failed")
            return None

    async def book_appointment(self, draft: AppointmentDraft) -> BookingResult:
        try:
            return await self._crm.book_appointment(draft)
        except Exception:
            logger.exception("Booking collaborator failed")
            return BookingResult(success=False, message="Unable to book appointment at this time.")

    async def get_doctors_by_ids(self, ids: list[int]) -> list[DoctorRecord]:
        """Doctors for *ids* in request order; unknown ids are skipped."""
        if not ids:
            return []
        by_id = {doctor.id: doctor for doctor in await self.get_all_doctors()}
        found = [by_id[i] for i in dict.fromkeys(ids) if i in by_id]
        if len(found) < len(set(ids)):
            missing = sorted(set(ids) - by_id.keys())
            logger.info("Doctor ids not in directory: %s", missing)
        return found

    async def enrich(self, treatments: list[TreatmentNode]) -> list[TreatmentNode]:
        """Copies of *treatments* carrying ``doctor_names`` / ``doctor_count``."""
        if not treatments:
            return []
        by_id = {doctor.id: doctor for doctor in await self.get_all_doctors()}
        enriched = []
        for node in treatments:
            names = [by_id[i].name for i in node.doctor_ids if i in by_id]
            enriched.append(
                node.model_copy(update={"children": [], "doctor_names": names, "doctor_count": len(names)})
            )
        return enriched

    # ── Long-form content ────────────────────────────────────────────

    async def get_cached_content(self, key: str, fetcher: Callable[[], Awaitable[str]]) -> str:
        return await self._cache.get(key, fetcher)

    async def _fetch_clinic_content(self) -> str:
        pages = await self._web.extract_content([self._site_url])
        text = "\n\n".join(page.content for page in pages if page.has_content)
        return text or load_static_clinic_content()

    async def _fetch_live_site(self) -> str:
        page = await self._web.crawl_website(self._site_url)
        return page.content if page.has_content else ""

    async def clinic_content(self) -> str:
        return await self.get_cached_content(CLINIC_CONTENT_KEY, self._fetch_clinic_content)

    async def live_site_content(self) -> str:
        return await self.get_cached_content(LIVE_SITE_KEY, self._fetch_live_site)

    async def search_web(self, query: str, max_results: int = 3) -> list[WebContent]:
        """Pages found by a web search for *query*; empty when the search fails."""
        try:
            return await self._web.search_and_extract(query, max_results)
        except Exception:
            logger.exception("Web search source failed")
            return []

    async def gather(self, intent: IntentLabel) -> str:
        """Combined long-form context for intents that need it, else ``""``."""
        if intent not in _CONTENT_INTENTS:
            return ""
        primary, secondary = await asyncio.gather(self.clinic_content(), self.live_site_content())
        return combine_contexts(primary, secondary, self._budget)
