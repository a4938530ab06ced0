import httpx
import pytest

from app.clients.hunter import HunterError, HunterQuotaError, HunterRateLimitError
from app.services.backoff import BackoffExecutor, BackoffPolicy
from app.services.datastore import InMemoryDatastore
from app.services.sourcing import verification as verification_module
from app.services.sourcing.verification import EmailMatch, EmailVerifier
from tests.helpers.fakes import NOW, RecordingSleep, StubEmailFinder, clock_from, make_staging
from tests.helpers.metrics_stub import StubMetrics


def _seeded(*records):
    store = InMemoryDatastore()
    for record in records:
        record.ai_selected = True
    store.add(*records)
    return store


def _verifier(finder, store, *, sleep=None, retries=0, **kwargs):
    return EmailVerifier(
        finder,
        store,
        executor=BackoffExecutor(BackoffPolicy(max_retries=retries), sleep=RecordingSleep()),
        sleep=sleep or RecordingSleep(),
        clock=clock_from(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_pauses_only_between_calls(monkeypatch):
    monkeypatch.setattr(verification_module, "metrics", StubMetrics())
    records = [make_staging("a"), make_staging("b"), make_staging("c")]
    store = _seeded(*records)
    sleep = RecordingSleep()

    summary = await _verifier(StubEmailFinder(), store, sleep=sleep).verify(records)

    assert sleep.delays == [0.5, 0.5]
    assert summary.verified == 3
    assert summary.credits_used == 3


@pytest.mark.asyncio
async def test_every_attempt_is_checkpointed(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(verification_module, "metrics", stub)
    good, weak, missing = make_staging("good"), make_staging("weak"), make_staging("missing")
    store = _seeded(good, weak, missing)
    finder = StubEmailFinder(
        matches={
            "Cool Air weak LLC": EmailMatch(email="maybe@weak.com", confidence=69),
            "Cool Air missing LLC": EmailMatch(email=None, confidence=0),
        }
    )

    summary = await _verifier(finder, store).verify([good, weak, missing])

    assert summary.verified_record_ids == ["good"]
    assert store.staging["good"].email_verified is True
    assert store.staging["good"].verification_confidence == 90
    assert store.staging["good"].email_verification_date == NOW
    assert store.staging["weak"].email_verified is False
    assert store.staging["weak"].email == "maybe@weak.com"
    assert store.staging["weak"].email_verification_date is not None
    assert store.staging["missing"].email is None
    assert store.staging["missing"].email_verification_date is not None
    assert [attempt.error for attempt in summary.attempts] == [None, "low confidence", "No email found"]
    assert stub.total("pipeline.verified") == 1
    assert stub.total("pipeline.credits_used") == 3


@pytest.mark.asyncio
async def test_confidence_threshold_is_inclusive():
    record = make_staging("edge")
    store = _seeded(record)
    finder = StubEmailFinder(default=EmailMatch(email="edge@coolair.com", confidence=70))

    summary = await _verifier(finder, store).verify([record])

    assert summary.verified == 1


@pytest.mark.asyncio
async def test_quota_exhaustion_stops_the_run():
    records = [make_staging("a"), make_staging("b"), make_staging("c")]
    store = _seeded(*records)
    finder = StubEmailFinder(errors={"Cool Air b LLC": HunterQuotaError()})

    summary = await _verifier(finder, store).verify(records)

    assert len(finder.find_calls) == 2
    assert summary.verified_record_ids == ["a"]
    assert summary.credits_used == 1
    assert "quota" in summary.stopped_reason
    assert store.staging["b"].email_verification_date is None
    assert store.staging["c"].email_verification_date is None


@pytest.mark.asyncio
async def test_rate_limit_stops_after_retries_are_spent():
    records = [make_staging("a"), make_staging("b")]
    store = _seeded(*records)
    finder = StubEmailFinder(errors={"Cool Air a LLC": HunterRateLimitError()})

    summary = await _verifier(finder, store, retries=2).verify(records)

    assert len(finder.find_calls) == 3
    assert summary.attempts == []
    assert summary.stopped_reason is not None


@pytest.mark.asyncio
async def test_server_error_is_recorded_and_run_continues():
    records = [make_staging("a"), make_staging("b")]
    store = _seeded(*records)
    finder = StubEmailFinder(errors={"Cool Air a LLC": HunterError("boom", status_code=500)})

    summary = await _verifier(finder, store).verify(records)

    assert summary.verified_record_ids == ["b"]
    assert summary.attempts[0].error == "boom"
    assert store.staging["a"].email_verification_date is not None


@pytest.mark.asyncio
async def test_invalid_input_uses_no_credit():
    nameless = make_staging("nameless", first_name=None, full_name=None)
    store = _seeded(nameless)

    class ValidatingFinder(StubEmailFinder):
        async def find(self, **kwargs):
            if not kwargs.get("first_name") and not kwargs.get("full_name"):
                raise ValueError("First name is required")
            return await super().find(**kwargs)

    summary = await _verifier(ValidatingFinder(), store).verify([nameless])

    assert summary.credits_used == 0
    assert summary.attempts[0].error == "First name is required"
    assert store.staging["nameless"].email_verified is False


@pytest.mark.asyncio
async def test_permanent_http_error_is_recorded_and_batch_continues():
    records = [make_staging("a"), make_staging("b"), make_staging("c")]
    store = _seeded(*records)
    request = httpx.Request("GET", "https://api.hunter.io/v2/email-finder")
    rejected = httpx.HTTPStatusError(
        "400 Bad Request", request=request, response=httpx.Response(400, request=request)
    )
    finder = StubEmailFinder(errors={"Cool Air b LLC": rejected})

    summary = await _verifier(finder, store).verify(records)

    assert len(finder.find_calls) == 3
    assert summary.verified_record_ids == ["a", "c"]
    assert summary.attempts[1].record_id == "b"
    assert summary.attempts[1].error == "400 Bad Request"
    assert summary.stopped_reason is None
    assert all(store.staging[key].email_verification_date is not None for key in ("a", "b", "c"))
    assert store.staging["b"].email_verified is False


@pytest.mark.asyncio
async def test_timeout_on_one_record_does_not_abort_batch():
    records = [make_staging("a"), make_staging("b"), make_staging("c")]
    store = _seeded(*records)
    finder = StubEmailFinder(errors={"Cool Air b LLC": TimeoutError()})

    summary = await _verifier(finder, store).verify(records)

    assert summary.verified_record_ids == ["a", "c"]
    assert summary.attempts[1].error == "TimeoutError"
    assert store.staging["c"].email_verification_date is not None
