from __future__ import annotations

import httpx
import pytest

from app.clients.hunter import (
    HunterAuthError,
    HunterClient,
    HunterError,
    HunterQuotaError,
    HunterRateLimitError,
    HunterSchemaError,
    company_domain,
    split_full_name,
)
from app.services.backoff import is_retryable

BASE_URL = "https://api.hunter.io"


def _client(handler) -> HunterClient:
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HunterClient("test-key", http_client=http)


def test_split_full_name():
    assert split_full_name("Maria de la Cruz") == ("Maria", "de la Cruz")
    assert split_full_name("Cher") == ("Cher", None)
    assert split_full_name("   ") == (None, None)


def test_company_domain_keeps_lowercase_alphanumerics():
    assert company_domain("Cool Air & Heat, LLC") == "coolairheatllc.com"
    assert company_domain("A" * 40) == "a" * 30 + ".com"
    assert company_domain("!!!") is None


@pytest.mark.asyncio
async def test_find_returns_match_and_sends_derived_params():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "email": "maria@coolair.com",
                    "score": 94,
                    "first_name": "Maria",
                    "last_name": "Lopez",
                    "position": "Owner",
                    "sources": [{"domain": "coolair.com"}, {"uri": "no-domain"}],
                }
            },
        )

    async with _client(handler) as client:
        match = await client.find(full_name="Maria Lopez", company="Cool Air")

    assert match.email == "maria@coolair.com"
    assert match.confidence == 94
    assert match.sources == ["coolair.com"]
    params = seen[0].url.params
    assert seen[0].url.path == "/v2/email-finder"
    assert params["api_key"] == "test-key"
    assert params["first_name"] == "Maria"
    assert params["last_name"] == "Lopez"
    assert params["domain"] == "coolair.com"


@pytest.mark.asyncio
async def test_find_without_hit_returns_empty_match():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"email": None, "score": None}})

    async with _client(handler) as client:
        match = await client.find(first_name="Sam", company="Nowhere")

    assert match.email is None
    assert match.confidence == 0


@pytest.mark.asyncio
async def test_find_validates_inputs_before_calling():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be reached
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        with pytest.raises(ValueError, match="First name"):
            await client.find(company="Cool Air")
        with pytest.raises(ValueError, match="domain or company"):
            await client.find(first_name="Maria")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type", "retryable"),
    [
        (401, HunterAuthError, False),
        (402, HunterQuotaError, False),
        (429, HunterRateLimitError, True),
        (500, HunterError, True),
        (400, HunterError, False),
    ],
)
async def test_error_statuses_map_to_typed_errors(status, error_type, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"errors": [{"details": "nope"}]})

    async with _client(handler) as client:
        with pytest.raises(error_type) as excinfo:
            await client.find(first_name="Maria", domain="coolair.com")

    assert excinfo.value.status_code == status
    assert is_retryable(excinfo.value) is retryable


@pytest.mark.asyncio
async def test_transport_failure_is_retryable_hunter_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    async with _client(handler) as client:
        with pytest.raises(HunterError) as excinfo:
            await client.account_status()

    assert excinfo.value.status_code is None
    assert is_retryable(excinfo.value) is True


@pytest.mark.asyncio
async def test_missing_data_is_schema_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"meta": {}})

    async with _client(handler) as client:
        with pytest.raises(HunterSchemaError) as excinfo:
            await client.account_status()

    assert is_retryable(excinfo.value) is False


@pytest.mark.asyncio
async def test_account_status_reads_search_credits():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/account"
        return httpx.Response(
            200,
            json={
                "data": {
                    "plan_name": "Starter",
                    "requests": {
                        "searches": {"used": 12, "available": 488},
                        "verifications": {"used": 0, "available": 1000},
                    },
                }
            },
        )

    async with _client(handler) as client:
        status = await client.account_status()

    assert status.verifications_available == 488
    assert status.searches_used == 12
    assert status.verifier_checks_available == 1000
    assert status.plan_name == "Starter"


def test_client_requires_api_key():
    with pytest.raises(ValueError):
        HunterClient("")
