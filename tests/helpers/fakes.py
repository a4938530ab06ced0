"""Builders and deterministic stand-ins for dispatch tests."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models.records import ColdLead, Job, LicenseRecord, Technician
from app.services.dispatch.mailer import MailRecipient
from app.services.errors import UpstreamError
from app.services.sourcing.pipeline import PipelineResult
from app.services.sourcing.selector import RankedChoice, SelectionCriteria
from app.services.sourcing.verification import AccountStatus, EmailMatch

TAMPA = (27.9506, -82.4572)
ORG_ID = "11111111-1111-1111-1111-111111111111"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def north_of(origin: tuple[float, float], miles: float) -> tuple[float, float]:
    """Point ``miles`` due north of ``origin`` on a 3959-mile sphere."""
    lat, lng = origin
    return lat + math.degrees(miles / 3959.0), lng


def make_job(**overrides: Any) -> Job:
    payload: dict[str, Any] = {
        "id": "job-1",
        "org_id": ORG_ID,
        "job_title": "Replace rooftop unit",
        "trade_needed": "HVAC",
        "urgency": "same_day",
        "description": "Rooftop unit is blowing warm air.",
        "budget_min": 1500,
        "budget_max": 3000,
        "city": "Tampa",
        "state": "FL",
        "lat": TAMPA[0],
        "lng": TAMPA[1],
    }
    payload.update(overrides)
    return Job(**payload)


def make_technician(tech_id: str, *, miles: float = 5.0, **overrides: Any) -> Technician:
    lat, lng = north_of(TAMPA, miles)
    payload: dict[str, Any] = {
        "id": tech_id,
        "org_id": ORG_ID,
        "full_name": f"Tech {tech_id}",
        "first_name": "Tech",
        "email": f"{tech_id}@example.com",
        "trade_needed": "HVAC",
        "city": "Tampa",
        "state": "FL",
        "lat": lat,
        "lng": lng,
        "average_rating": 4.5,
        "response_rate": 80,
    }
    payload.update(overrides)
    return Technician(**payload)


def make_staging(record_id: str, **overrides: Any) -> LicenseRecord:
    payload: dict[str, Any] = {
        "id": record_id,
        "source": "fl_dbpr",
        "license_number": f"CAC{record_id}",
        "license_status": "Active",
        "license_classification": "Class A Air Conditioning",
        "business_name": f"Cool Air {record_id} LLC",
        "full_name": "Maria Lopez",
        "first_name": "Maria",
        "last_name": "Lopez",
        "phone": "813-555-0100",
        "city": "Tampa",
        "state": "FL",
        "trade_type": "HVAC",
        "created_at": NOW,
        "updated_at": NOW,
    }
    payload.update(overrides)
    return LicenseRecord(**payload)


def make_cold_lead(lead_id: str, **overrides: Any) -> ColdLead:
    payload: dict[str, Any] = {
        "id": lead_id,
        "email": f"{lead_id}@coolair.com",
        "full_name": "Sam Cold",
        "first_name": "Sam",
        "company_name": "Cold Air Co",
        "city": "Tampa",
        "state": "FL",
        "trade_type": "HVAC",
        "email_verified": True,
    }
    payload.update(overrides)
    return ColdLead(**payload)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StubRanker:
    def __init__(self, choices: list[RankedChoice] | None = None, *, error: Exception | None = None) -> None:
        self._choices = choices or []
        self._error = error
        self.calls: list[tuple[int, SelectionCriteria, int]] = []

    async def rank(
        self, candidates: Sequence[LicenseRecord], criteria: SelectionCriteria, limit: int
    ) -> list[RankedChoice]:
        self.calls.append((len(candidates), criteria, limit))
        if self._error is not None:
            raise self._error
        return list(self._choices)


class StubEmailFinder:
    """Returns scripted matches keyed by company name; counts lookups separately from account checks."""

    def __init__(
        self,
        *,
        credits: int = 100,
        matches: dict[str, EmailMatch] | None = None,
        default: EmailMatch | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.credits = credits
        self._matches = matches or {}
        self._default = default
        self._errors = errors or {}
        self.find_calls: list[dict[str, Any]] = []
        self.account_calls = 0

    async def find(self, **kwargs: Any) -> EmailMatch:
        self.find_calls.append(kwargs)
        company = kwargs.get("company") or ""
        if company in self._errors:
            raise self._errors[company]
        if company in self._matches:
            return self._matches[company]
        if self._default is not None:
            return self._default
        slug = company.lower().replace(" ", "")
        return EmailMatch(email=f"owner@{slug}.com", confidence=90)

    async def account_status(self) -> AccountStatus:
        self.account_calls += 1
        return AccountStatus(verifications_available=self.credits)


class RecordingMailer:
    """Mailer double; ``fail_for`` raises and ``reject_for`` returns False for the given candidate ids."""

    def __init__(self, *, fail_for: set[str] | None = None, reject_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.reject_for = reject_for or set()
        self.sent: list[tuple[MailRecipient, dict[str, Any]]] = []
        self.attempts: list[str] = []

    async def send(self, recipient: MailRecipient, context: dict[str, Any]) -> bool:
        self.attempts.append(recipient.candidate_id)
        if recipient.candidate_id in self.fail_for:
            raise UpstreamError("SendGrid error: 500", status_code=500)
        if recipient.candidate_id in self.reject_for:
            return False
        self.sent.append((recipient, context))
        return True


class SpyPipeline:
    """Stands in for LeadSourcingPipeline and counts invocations."""

    def __init__(self, result: PipelineResult | None = None, *, error: Exception | None = None) -> None:
        self._result = result or PipelineResult()
        self._error = error
        self.calls: list[tuple[str, bool | None]] = []

    async def run(self, job: Job, *, skip_if_cold_exists: bool | None = None) -> PipelineResult:
        self.calls.append((job.id, skip_if_cold_exists))
        if self._error is not None:
            raise self._error
        return self._result


def clock_from(start: datetime = NOW, step: timedelta = timedelta(seconds=1)):
    current = [start]

    def _tick() -> datetime:
        value = current[0]
        current[0] = value + step
        return value

    return _tick
