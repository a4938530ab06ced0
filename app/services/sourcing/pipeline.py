"""Cold-lead sourcing: staged license records -> AI selection -> email verification -> cold leads.

Every stage checkpoints its progress on the staging rows themselves, so a run that
dies halfway loses nothing: the next run picks up at whichever stage gate each
record has reached.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from app.config import Settings
from app.models.records import ColdLead, Job, LicenseRecord
from app.observability.metrics import metrics
from app.services.backoff import BackoffExecutor
from app.services.datastore import Datastore
from app.services.errors import CreditExhaustedError, DatastoreError, DuplicateRecordError, PipelineError
from app.services.sourcing.selector import LeadSelector, SelectionCriteria
from app.services.sourcing.verification import EmailFinder, EmailVerifier

logger = logging.getLogger("pipeline.lead_sourcing")

ENRICHMENT_SOURCE = "hunter.io"
DEFAULT_JOB_TITLE = "Contractor"
DEFAULT_COUNTRY = "USA"


@dataclass(frozen=True)
class PipelineConfig:
    select_limit: int = 20
    verify_limit: int = 10
    min_confidence: int = 70
    skip_if_cold_exists: bool = True
    candidate_fetch_limit: int = 100
    pause_seconds: float = 0.5

    @classmethod
    def from_settings(cls, config: Settings) -> "PipelineConfig":
        return cls(
            select_limit=config.pipeline_select_limit,
            verify_limit=config.pipeline_verify_limit,
            min_confidence=config.pipeline_min_confidence,
            skip_if_cold_exists=config.pipeline_skip_if_cold_exists,
            candidate_fetch_limit=config.pipeline_candidate_fetch_limit,
            pause_seconds=config.verification_pause_seconds,
        )


class PipelineResult(BaseModel):
    """Outcome of one pipeline run; an empty run carries ``skipped_reason`` instead of an error."""

    pipeline_ran: bool = False
    selected: int = 0
    verified: int = 0
    moved: int = 0
    cold_lead_ids: list[str] = Field(default_factory=list)
    credits_used: int = 0
    skipped_reason: str | None = None


class PipelineStatus(BaseModel):
    """Readiness probe for a state's staging backlog."""

    can_run: bool
    reason: str | None = None
    verification_credits: int = 0
    unselected: int = 0
    pending_verification: int = 0
    ready_to_move: int = 0


def build_cold_lead(record: LicenseRecord, *, now: datetime) -> ColdLead:
    """Deterministic ColdLead projection of a verified staging record."""
    query = (
        f"{record.trade_type or 'General'} contractors in "
        f"{record.city or 'Unknown'}, {record.state or 'Unknown'}"
    )
    return ColdLead(
        email=(record.email or "").strip().lower(),
        supersearch_query=query,
        full_name=record.full_name,
        first_name=record.first_name,
        last_name=record.last_name,
        company_name=record.business_name,
        job_title=record.job_title or DEFAULT_JOB_TITLE,
        phone=record.phone,
        city=record.city,
        state=record.state,
        country=DEFAULT_COUNTRY,
        address=record.address,
        trade_type=record.trade_type,
        lead_source=record.source,
        license_number=record.license_number,
        license_expiration=record.license_expiration,
        license_status=record.license_status,
        license_classification=record.license_classification,
        email_verified=True,
        enriched_at=record.email_verification_date,
        enrichment_source=ENRICHMENT_SOURCE,
        enrichment_credits_used=1,
        dispatch_count=0,
        created_at=now,
        updated_at=now,
    )


class LeadSourcingPipeline:
    """Runs selection, verification and promotion for one job."""

    def __init__(
        self,
        datastore: Datastore,
        *,
        selector: LeadSelector,
        finder: EmailFinder | None,
        executor: BackoffExecutor | None = None,
        config: PipelineConfig | None = None,
        verifier: EmailVerifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._datastore = datastore
        self._selector = selector
        self._finder = finder
        self._executor = executor or BackoffExecutor()
        self._config = config or PipelineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if verifier is None and finder is not None:
            verifier = EmailVerifier(
                finder,
                datastore,
                executor=self._executor,
                min_confidence=self._config.min_confidence,
                pause_seconds=self._config.pause_seconds,
                clock=self._clock,
            )
        self._verifier = verifier

    @property
    def config(self) -> PipelineConfig:
        return self._config

    async def run(self, job: Job, *, skip_if_cold_exists: bool | None = None) -> PipelineResult:
        """Source cold leads for ``job``.

        Raises CreditExhaustedError when the finder reports zero remaining lookups and
        PipelineError when the finder account cannot be reached.
        """
        skip_check = self._config.skip_if_cold_exists if skip_if_cold_exists is None else skip_if_cold_exists
        log_context = {"job_id": job.id, "state": job.state, "trade": job.trade_needed}
        logger.info("pipeline.started", extra=log_context)

        if skip_check:
            existing = await self._datastore.count_undispatched_cold_leads(
                state=job.state, trade=job.trade_needed
            )
            if existing > 0:
                logger.info("pipeline.skipped", extra={**log_context, "existing_cold_leads": existing})
                return PipelineResult(skipped_reason=f"{existing} matching cold leads already exist")

        if self._finder is None or self._verifier is None:
            logger.warning("pipeline.skipped", extra={**log_context, "reason": "no_email_finder"})
            return PipelineResult(skipped_reason="Email finder not configured")

        credits = await self._available_credits()
        if credits <= 0:
            raise CreditExhaustedError()
        verify_budget = min(self._config.verify_limit, credits)
        if credits < self._config.verify_limit:
            logger.warning(
                "pipeline.low_credits",
                extra={**log_context, "credits": credits, "verify_limit": self._config.verify_limit},
            )

        # Stage 1: select
        selected, selection_error = await self._select(job)
        if not selected:
            # Earlier runs may have left selected or verified records behind.
            pending = await self._datastore.count_staging_pending_verification(state=job.state)
            if pending == 0:
                cold_lead_ids = await self.promote(state=job.state)
                return PipelineResult(
                    pipeline_ran=True,
                    moved=len(cold_lead_ids),
                    cold_lead_ids=cold_lead_ids,
                    skipped_reason=selection_error,
                )
            logger.info("pipeline.resumed", extra={**log_context, "pending_verification": pending})

        # Stage 2: verify
        to_verify = await self._datastore.list_staging_for_verification(state=job.state, limit=verify_budget)
        verification = await self._verifier.verify(to_verify)
        logger.info(
            "pipeline.stage.verify",
            extra={
                **log_context,
                "attempted": len(verification.attempts),
                "verified": verification.verified,
                "credits_used": verification.credits_used,
                "stopped_reason": verification.stopped_reason,
            },
        )

        # Stage 3: promote
        cold_lead_ids = await self.promote(state=job.state)
        logger.info("pipeline.stage.promote", extra={**log_context, "moved": len(cold_lead_ids)})

        return PipelineResult(
            pipeline_ran=True,
            selected=selected,
            verified=verification.verified,
            moved=len(cold_lead_ids),
            cold_lead_ids=cold_lead_ids,
            credits_used=verification.credits_used,
        )

    async def _select(self, job: Job) -> tuple[int, str | None]:
        """Rank unselected staging rows and flag the winners; returns (count, reason when none)."""
        candidates = await self._datastore.list_unselected_staging(
            state=job.state, limit=self._config.candidate_fetch_limit
        )
        if not candidates:
            return 0, "No candidates available in staging table"

        selection = await self._selector.select(
            candidates,
            SelectionCriteria(
                job_city=job.city or "",
                job_state=job.state or "",
                trade_needed=job.trade_needed or "",
                limit=self._config.select_limit,
                job_lat=job.lat,
                job_lng=job.lng,
            ),
        )
        if not selection.selected:
            return 0, selection.error or "No contractors matched selection criteria"
        await self._datastore.mark_staging_selected(
            [item.id for item in selection.selected], score=selection.top_score, at=self._clock()
        )
        metrics.increment("pipeline.selected", len(selection.selected))
        logger.info(
            "pipeline.stage.select",
            extra={
                "job_id": job.id,
                "state": job.state,
                "selected": len(selection.selected),
                "used_ai": selection.used_ai,
            },
        )
        return len(selection.selected), None

    async def promote(self, *, state: str | None) -> list[str]:
        """Move verified records into cold leads; an email already present is only marked moved."""
        ready = await self._datastore.list_staging_ready_to_promote(
            state=state, min_confidence=self._config.min_confidence
        )
        if not ready:
            return []
        existing = await self._datastore.find_existing_cold_lead_emails(record.email for record in ready if record.email)
        cold_lead_ids: list[str] = []
        for record in ready:
            now = self._clock()
            email = (record.email or "").strip().lower()
            if email in existing:
                await self._mark_moved(record.id, cold_lead_id=None, at=now)
                logger.info("pipeline.promote.duplicate", extra={"record_id": record.id})
                continue
            try:
                lead = await self._datastore.insert_cold_lead(build_cold_lead(record, now=now))
            except DuplicateRecordError:
                existing.add(email)
                await self._mark_moved(record.id, cold_lead_id=None, at=now)
                logger.info("pipeline.promote.duplicate", extra={"record_id": record.id})
                continue
            except DatastoreError:
                logger.exception("pipeline.promote.insert_failed", extra={"record_id": record.id})
                continue
            existing.add(email)
            cold_lead_ids.append(lead.id)
            await self._mark_moved(record.id, cold_lead_id=lead.id, at=now)
        metrics.increment("pipeline.moved", len(cold_lead_ids))
        return cold_lead_ids

    async def _mark_moved(self, record_id: str, *, cold_lead_id: str | None, at: datetime) -> None:
        # A lost checkpoint leaves the record ready; the next run sees the email and only marks it.
        try:
            await self._datastore.mark_staging_moved(record_id, cold_lead_id=cold_lead_id, at=at)
        except DatastoreError:
            logger.exception("pipeline.promote.mark_moved_failed", extra={"record_id": record_id})

    async def status(self, state: str | None) -> PipelineStatus:
        credits = await self._available_credits() if self._finder is not None else 0
        unselected = len(
            await self._datastore.list_unselected_staging(state=state, limit=self._config.candidate_fetch_limit)
        )
        pending = await self._datastore.count_staging_pending_verification(state=state)
        ready = len(
            await self._datastore.list_staging_ready_to_promote(
                state=state, min_confidence=self._config.min_confidence
            )
        )
        reason = None
        if self._finder is None:
            reason = "Email finder not configured"
        elif credits == 0:
            reason = "No email verification credits available"
        elif unselected == 0 and pending == 0 and ready == 0:
            reason = "No records available for pipeline"
        return PipelineStatus(
            can_run=reason is None,
            reason=reason,
            verification_credits=credits,
            unselected=unselected,
            pending_verification=pending,
            ready_to_move=ready,
        )

    async def _available_credits(self) -> int:
        finder = self._finder
        if finder is None:
            raise PipelineError("Email finder not configured", code="500_PIPELINE_MISCONFIGURED")
        try:
            account = await self._executor.execute(finder.account_status, label="email_finder.account")
        except Exception as exc:
            logger.exception("pipeline.account_status_failed")
            raise PipelineError("Failed to check email finder account status") from exc
        return max(0, account.verifications_available)
