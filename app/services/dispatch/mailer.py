"""Job-dispatch email delivery: template context, SendGrid transport, and a dry-run stand-in."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final, Protocol
from urllib.parse import urlencode

import httpx

from app.models.records import Job
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

URGENCY_LABELS: Final[dict[str, str]] = {
    "emergency": "Emergency",
    "same_day": "Same Day",
    "next_day": "Next Day",
    "within_week": "Within Week",
    "flexible": "Flexible",
}
DESCRIPTION_LIMIT: Final[int] = 200
DEFAULT_DESCRIPTION: Final[str] = "Details provided upon confirmation."

WARM_CHANNEL: Final[str] = "warm"
COLD_CHANNEL: Final[str] = "cold"


@dataclass(frozen=True)
class MailRecipient:
    """One addressee of a dispatch email."""

    channel: str
    candidate_id: str
    email: str
    name: str
    first_name: str | None = None
    recipient_id: str | None = None


class Mailer(Protocol):
    """Delivers one dispatch email; a False return or an exception both mean not sent."""

    async def send(self, recipient: MailRecipient, context: dict[str, Any]) -> bool:
        ...


def format_urgency(urgency: str | None) -> str:
    return URGENCY_LABELS.get(urgency or "", urgency or "Flexible")


def _money(value: float) -> str:
    return f"{int(value):,}" if float(value).is_integer() else f"{value:,.2f}"


def format_budget_range(budget_min: float | None, budget_max: float | None) -> str:
    if budget_min and budget_max:
        return f"${_money(budget_min)} - ${_money(budget_max)}"
    if budget_min:
        return f"From ${_money(budget_min)}"
    if budget_max:
        return f"Up to ${_money(budget_max)}"
    return "Competitive Rate"


def format_scheduled_date(value: datetime | None) -> str:
    if value is None:
        return "Flexible"
    return f"{value:%b} {value.day}, {value.year}"


def response_url(app_url: str, job: Job, recipient: MailRecipient) -> str:
    base = f"{app_url.rstrip('/')}/jobs/{job.id}/respond"
    if recipient.channel == WARM_CHANNEL:
        query = {"tech": recipient.candidate_id, "r": recipient.recipient_id or ""}
    else:
        query = {"lead": recipient.email, "r": recipient.recipient_id or ""}
    return f"{base}?{urlencode(query)}"


def unsubscribe_url(app_url: str, recipient: MailRecipient) -> str:
    query = urlencode({"email": recipient.email, "type": recipient.channel})
    return f"{app_url.rstrip('/')}/api/unsubscribe?{query}"


def build_template_context(
    job: Job,
    recipient: MailRecipient,
    *,
    app_url: str,
    company_name: str,
    company_address: str,
) -> dict[str, Any]:
    """Dynamic template data for a dispatch email."""
    urgency = format_urgency(job.urgency)
    trade = job.trade_needed or "General"
    location = ", ".join(part for part in (job.city, job.state) if part) or "Location TBD"
    description = job.description[:DESCRIPTION_LIMIT] if job.description else DEFAULT_DESCRIPTION
    return {
        "technician_name": recipient.name,
        "first_name": recipient.first_name or recipient.name.split(" ")[0],
        "subject": f"New {trade} Job in {job.city or job.state or 'your area'} - {urgency}",
        "job_title": job.job_title or f"{trade} Job",
        "trade_needed": trade,
        "location": location,
        "urgency": urgency,
        "scheduled_date": format_scheduled_date(job.scheduled_at),
        "duration": job.duration or "TBD",
        "budget_range": format_budget_range(job.budget_min, job.budget_max),
        "description": description,
        "response_url": response_url(app_url, job, recipient),
        "company_name": company_name,
        "company_address": company_address,
        "unsubscribe_url": unsubscribe_url(app_url, recipient),
    }


class SendGridMailer(Mailer):
    """Sends dispatch emails through the SendGrid v3 mail/send API with a dynamic template.

    Sends are not retried; a duplicate email is worse than a missed one.
    """

    def __init__(
        self,
        api_key: str,
        *,
        from_email: str,
        from_name: str,
        template_id: str | None,
        base_url: str = "https://api.sendgrid.com",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("SENDGRID_API_KEY is required to create a SendGridMailer.")
        self._api_key = api_key
        self._from = {"email": from_email, "name": from_name}
        self._template_id = template_id or "d-placeholder"
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    def build_payload(self, recipient: MailRecipient, context: dict[str, Any]) -> dict[str, Any]:
        return {
            "personalizations": [
                {
                    "to": [{"email": recipient.email, "name": recipient.name}],
                    "dynamic_template_data": context,
                }
            ],
            "from": self._from,
            "reply_to": self._from,
            "template_id": self._template_id,
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

    async def send(self, recipient: MailRecipient, context: dict[str, Any]) -> bool:
        try:
            response = await self._http.post(
                "/v3/mail/send",
                json=self.build_payload(recipient, context),
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"HTTP error calling SendGrid: {type(exc).__name__}", code="SENDGRID_ERROR") from exc
        if response.status_code >= 400:
            raise UpstreamError(
                f"SendGrid error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
                code="SENDGRID_ERROR",
            )
        return True


class DryRunMailer(Mailer):
    """Logs instead of sending; used when no SendGrid key is configured."""

    async def send(self, recipient: MailRecipient, context: dict[str, Any]) -> bool:
        logger.info(
            "mailer.dry_run",
            extra={"channel": recipient.channel, "recipient_id": recipient.recipient_id},
        )
        logger.debug("mailer.dry_run.address", extra={"email": recipient.email})
        return True
