import json
import logging
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from app.services.dispatch.mailer import (
    COLD_CHANNEL,
    WARM_CHANNEL,
    DryRunMailer,
    MailRecipient,
    SendGridMailer,
    build_template_context,
    format_budget_range,
    format_scheduled_date,
    format_urgency,
)
from app.services.errors import UpstreamError
from tests.helpers.fakes import make_job

WARM = MailRecipient(
    channel=WARM_CHANNEL,
    candidate_id="tech-1",
    email="tech-1@example.com",
    name="Dana Smith",
    first_name="Dana",
    recipient_id="rcpt-1",
)
COLD = MailRecipient(
    channel=COLD_CHANNEL,
    candidate_id="lead-1",
    email="owner+hvac@coolair.com",
    name="Sam Cold",
    recipient_id="rcpt-2",
)


def _context(job, recipient):
    return build_template_context(
        job,
        recipient,
        app_url="https://app.example.com/",
        company_name="Dispatch Co",
        company_address="1 Main St",
    )


def test_formatting_helpers():
    assert format_urgency("same_day") == "Same Day"
    assert format_urgency(None) == "Flexible"
    assert format_urgency("asap") == "asap"
    assert format_budget_range(1500, 3000) == "$1,500 - $3,000"
    assert format_budget_range(250.5, None) == "From $250.50"
    assert format_budget_range(None, 800) == "Up to $800"
    assert format_budget_range(None, None) == "Competitive Rate"
    assert format_scheduled_date(datetime(2025, 3, 5, 9, tzinfo=timezone.utc)) == "Mar 5, 2025"
    assert format_scheduled_date(None) == "Flexible"


def test_warm_context_links_to_technician():
    context = _context(make_job(), WARM)

    assert context["subject"] == "New HVAC Job in Tampa - Same Day"
    assert context["first_name"] == "Dana"
    assert context["location"] == "Tampa, FL"
    assert context["budget_range"] == "$1,500 - $3,000"
    query = parse_qs(urlsplit(context["response_url"]).query)
    assert context["response_url"].startswith("https://app.example.com/jobs/job-1/respond?")
    assert query == {"tech": ["tech-1"], "r": ["rcpt-1"]}


def test_cold_context_links_by_email_and_encodes_it():
    context = _context(make_job(), COLD)

    assert context["first_name"] == "Sam"
    query = parse_qs(urlsplit(context["response_url"]).query)
    assert query == {"lead": ["owner+hvac@coolair.com"], "r": ["rcpt-2"]}
    unsubscribe = parse_qs(urlsplit(context["unsubscribe_url"]).query)
    assert unsubscribe == {"email": ["owner+hvac@coolair.com"], "type": ["cold"]}


def test_context_truncates_description_and_fills_defaults():
    long_job = make_job(description="x" * 500, job_title=None, duration=None)
    assert len(_context(long_job, WARM)["description"]) == 200

    bare = make_job(description=None, city=None, state=None, trade_needed=None, budget_min=None, budget_max=None)
    context = _context(bare, WARM)
    assert context["description"] == "Details provided upon confirmation."
    assert context["location"] == "Location TBD"
    assert context["job_title"] == "General Job"
    assert context["budget_range"] == "Competitive Rate"


@pytest.mark.asyncio
async def test_sendgrid_posts_dynamic_template_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    http = httpx.AsyncClient(base_url="https://api.sendgrid.com", transport=httpx.MockTransport(handler))
    mailer = SendGridMailer(
        "sg-key",
        from_email="dispatch@example.com",
        from_name="Dispatch",
        template_id="d-123",
        http_client=http,
    )
    context = _context(make_job(), WARM)

    assert await mailer.send(WARM, context) is True

    request = seen[0]
    assert request.url.path == "/v3/mail/send"
    assert request.headers["Authorization"] == "Bearer sg-key"
    body = json.loads(request.content)
    assert body["template_id"] == "d-123"
    assert body["personalizations"][0]["to"] == [{"email": "tech-1@example.com", "name": "Dana Smith"}]
    assert body["personalizations"][0]["dynamic_template_data"]["subject"] == context["subject"]
    assert body["tracking_settings"]["open_tracking"] == {"enable": True}
    await http.aclose()


@pytest.mark.asyncio
async def test_sendgrid_error_status_raises_without_retry():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="oops")

    http = httpx.AsyncClient(base_url="https://api.sendgrid.com", transport=httpx.MockTransport(handler))
    mailer = SendGridMailer("sg-key", from_email="d@example.com", from_name="D", template_id=None, http_client=http)

    with pytest.raises(UpstreamError) as excinfo:
        await mailer.send(COLD, {})

    assert excinfo.value.status_code == 500
    assert len(calls) == 1
    await http.aclose()


@pytest.mark.asyncio
async def test_dry_run_mailer_logs_without_keeping_messages(caplog):
    mailer = DryRunMailer()

    with caplog.at_level(logging.INFO, logger="app.services.dispatch.mailer"):
        for _ in range(3):
            assert await mailer.send(WARM, {"subject": "hi"}) is True

    events = [record for record in caplog.records if record.getMessage() == "mailer.dry_run"]
    assert len(events) == 3
    assert events[0].recipient_id == "rcpt-1"
    assert not hasattr(mailer, "sent")
