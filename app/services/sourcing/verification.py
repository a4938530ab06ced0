"""Stage 2 of lead sourcing: discover and verify an email for each selected record."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from app.models.records import LicenseRecord
from app.observability.metrics import metrics
from app.services.backoff import BackoffExecutor
from app.services.errors import UpstreamError

if TYPE_CHECKING:
    from app.services.datastore import Datastore

logger = logging.getLogger(__name__)

# Statuses after which further lookups in this run would only burn quota or fail again.
STOP_STATUSES = frozenset({401, 402, 429})


@dataclass(frozen=True)
class EmailMatch:
    """Best email guess for a person; ``email`` is None when nothing was found."""

    email: str | None
    confidence: int
    sources: list[str] = field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    position: str | None = None


@dataclass(frozen=True)
class AccountStatus:
    verifications_available: int
    searches_used: int = 0
    verifier_checks_available: int = 0
    plan_name: str | None = None


class EmailFinder(Protocol):
    """Email discovery capability with a metered lookup budget."""

    async def find(
        self,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        full_name: str | None = None,
        company: str | None = None,
        domain: str | None = None,
    ) -> EmailMatch:
        ...

    async def account_status(self) -> AccountStatus:
        ...


@dataclass(frozen=True)
class VerificationAttempt:
    record_id: str
    email: str | None
    confidence: int
    verified: bool
    error: str | None = None


@dataclass
class VerificationSummary:
    attempts: list[VerificationAttempt] = field(default_factory=list)
    credits_used: int = 0
    stopped_reason: str | None = None

    @property
    def verified(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.verified)

    @property
    def verified_record_ids(self) -> list[str]:
        return [attempt.record_id for attempt in self.attempts if attempt.verified]


class EmailVerifier:
    """Runs lookups one at a time with a fixed pause, checkpointing every attempt."""

    def __init__(
        self,
        finder: EmailFinder,
        datastore: "Datastore",
        *,
        executor: BackoffExecutor | None = None,
        min_confidence: int = 70,
        pause_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._finder = finder
        self._datastore = datastore
        self._executor = executor or BackoffExecutor()
        self._min_confidence = min_confidence
        self._pause_seconds = pause_seconds
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def verify(self, records: Sequence[LicenseRecord]) -> VerificationSummary:
        summary = VerificationSummary()
        for position, record in enumerate(records):
            if position and self._pause_seconds > 0:
                await self._sleep(self._pause_seconds)

            match: EmailMatch | None = None
            error: str | None = None
            try:
                summary.credits_used += 1
                match = await self._executor.execute(
                    lambda record=record: self._finder.find(
                        first_name=record.first_name,
                        last_name=record.last_name,
                        full_name=record.full_name,
                        company=record.business_name,
                    ),
                    label="email_finder",
                )
            except ValueError as exc:
                # Rejected before any lookup was made.
                summary.credits_used -= 1
                error = str(exc)
            except UpstreamError as exc:
                if exc.status_code in STOP_STATUSES:
                    summary.credits_used -= 1
                    summary.stopped_reason = f"Email finder unavailable: {exc}"
                    logger.warning(
                        "verification.stopped",
                        extra={"record_id": record.id, "status_code": exc.status_code},
                    )
                    break
                error = str(exc)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "verification.lookup_failed",
                    extra={"record_id": record.id, "error_type": exc.__class__.__name__},
                )

            attempt = self._evaluate(record, match, error)
            await self._datastore.record_verification(
                record.id,
                email=attempt.email,
                verified=attempt.verified,
                confidence=attempt.confidence,
                at=self._clock(),
            )
            summary.attempts.append(attempt)
            logger.info(
                "verification.attempt",
                extra={
                    "record_id": record.id,
                    "verified": attempt.verified,
                    "confidence": attempt.confidence,
                    "error": attempt.error,
                },
            )

        metrics.increment("pipeline.verified", summary.verified)
        metrics.increment("pipeline.credits_used", summary.credits_used)
        return summary

    def _evaluate(
        self, record: LicenseRecord, match: EmailMatch | None, error: str | None
    ) -> VerificationAttempt:
        if match is None:
            return VerificationAttempt(record_id=record.id, email=None, confidence=0, verified=False, error=error)
        if not match.email:
            return VerificationAttempt(
                record_id=record.id, email=None, confidence=0, verified=False, error="No email found"
            )
        confidence = max(0, min(100, match.confidence))
        if confidence < self._min_confidence:
            return VerificationAttempt(
                record_id=record.id,
                email=match.email,
                confidence=confidence,
                verified=False,
                error="low confidence",
            )
        return VerificationAttempt(record_id=record.id, email=match.email, confidence=confidence, verified=True)
