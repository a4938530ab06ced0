"""Dispatch a job once: warm pool first, cold leads on a shortfall, best-effort sends."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from app.config import Settings
from app.models.records import (
    ColdLead,
    DispatchMethod,
    Job,
    JobStatus,
    LeadSource,
    Outreach,
    OutreachStatus,
    Recipient,
)
from app.observability.metrics import metrics
from app.services.datastore import Datastore
from app.services.dispatch.geo import RankedTechnician, Scorer, rank_warm_candidates
from app.services.dispatch.mailer import (
    COLD_CHANNEL,
    WARM_CHANNEL,
    MailRecipient,
    Mailer,
    build_template_context,
)
from app.services.errors import (
    AlreadyDispatchedError,
    DatastoreError,
    DispatchError,
    DuplicateRecordError,
    JobNotFoundError,
    NoCandidatesError,
    PipelineError,
)
from app.services.sourcing.pipeline import LeadSourcingPipeline, PipelineResult

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 3


@dataclass(frozen=True)
class DispatchConfig:
    public_pool_org_id: str = "00000000-0000-0000-0000-000000000001"
    max_distance_miles: float = 50.0
    cold_lead_limit: int = 50
    send_concurrency: int = 10
    app_url: str = "http://localhost:3000"
    company_name: str = "Dispatch Co"
    company_address: str = "100 Main St, Anytown, USA"

    @classmethod
    def from_settings(cls, config: Settings) -> "DispatchConfig":
        return cls(
            public_pool_org_id=config.public_pool_org_id,
            max_distance_miles=config.dispatch_max_distance_miles,
            cold_lead_limit=config.dispatch_cold_lead_limit,
            send_concurrency=config.dispatch_send_concurrency,
            app_url=config.app_public_url,
            company_name=config.company_name,
            company_address=config.company_address,
        )


@dataclass(frozen=True)
class SendOutcome:
    """Settled result of one send; failures carry the error text."""

    channel: str
    candidate_id: str
    recipient_id: str | None
    success: bool
    error: str | None = None


class WarmSummary(BaseModel):
    id: str
    name: str | None = None
    score: int
    distance_miles: float


class ColdSample(BaseModel):
    email: str
    company: str | None = None
    verified: bool


class PipelineStats(BaseModel):
    ran: bool = False
    selected: int = 0
    verified: int = 0
    moved: int = 0
    credits_used: int = 0
    skipped_reason: str | None = None

    @classmethod
    def from_result(cls, result: PipelineResult) -> "PipelineStats":
        return cls(
            ran=result.pipeline_ran,
            selected=result.selected,
            verified=result.verified,
            moved=result.moved,
            credits_used=result.credits_used,
            skipped_reason=result.skipped_reason,
        )


class SendFailure(BaseModel):
    channel: str
    candidate_id: str
    error: str | None = None


class DispatchResult(BaseModel):
    """Caller-facing outcome; sent counts reflect confirmed sends only."""

    outreach_id: str
    job_id: str
    total_recipients: int
    warm_count: int
    cold_count: int
    warm_sent: int
    cold_sent: int
    trade: str | None = None
    location: str
    message: str
    top_warm: list[WarmSummary] = Field(default_factory=list)
    cold_leads_sample: list[ColdSample] = Field(default_factory=list)
    pipeline: PipelineStats | None = None
    failures: list[SendFailure] = Field(default_factory=list)


def dispatch_message(job: Job, warm_sent: int, cold_sent: int) -> str:
    trade = job.trade_needed or "General"
    if warm_sent and not cold_sent:
        return f"Dispatched to {warm_sent} registered {trade} contractors"
    if cold_sent and not warm_sent:
        return f"Dispatched to {cold_sent} cold leads (no registered contractors in area)"
    if warm_sent and cold_sent:
        return f"Dispatched to {warm_sent} registered + {cold_sent} cold leads"
    return f"No contractors found in {job.city or job.state or 'this area'}"


def _display_name(*candidates: str | None) -> str:
    for value in candidates:
        if value:
            return value
    return "Contractor"


class DispatchOrchestrator:
    """Turns a job id into exactly one outreach and a settled batch of sends."""

    def __init__(
        self,
        datastore: Datastore,
        *,
        mailer: Mailer,
        pipeline: LeadSourcingPipeline | None = None,
        config: DispatchConfig | None = None,
        scorer: Scorer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._datastore = datastore
        self._mailer = mailer
        self._pipeline = pipeline
        self._config = config or DispatchConfig()
        self._scorer = scorer
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def pipeline(self) -> LeadSourcingPipeline | None:
        return self._pipeline

    async def dispatch(self, job_id: str) -> DispatchResult:
        metrics.increment("dispatch.requests")
        started = time.perf_counter()
        try:
            result = await self._dispatch(job_id)
        except DispatchError as exc:
            metrics.increment("dispatch.errors", tags={"code": exc.code})
            logger.warning("dispatch.failed", extra={"job_id": job_id, "code": exc.code, "error": str(exc)})
            raise
        metrics.timing("dispatch.latency_ms", (time.perf_counter() - started) * 1000)
        return result

    async def _dispatch(self, job_id: str) -> DispatchResult:
        job = await self._datastore.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        existing = await self._datastore.get_outreach_for_job(job_id)
        if existing is not None:
            raise AlreadyDispatchedError(job_id, existing.id)

        logger.info("dispatch.started", extra={"job_id": job_id, "trade": job.trade_needed, "state": job.state})
        warm = await self._warm_candidates(job)
        cold: list[ColdLead] = []
        stats: PipelineStats | None = None
        if not warm:
            cold, stats = await self._cold_candidates(job)

        if not warm and not cold:
            raise NoCandidatesError(job.trade_needed, job.location_label)

        outreach = await self._create_outreach(job, total=len(warm) + len(cold), stats=stats)
        recipient_ids = await self._create_recipients(outreach, warm, cold)

        warm_targets = [
            MailRecipient(
                channel=WARM_CHANNEL,
                candidate_id=item.technician.id,
                email=item.technician.email or "",
                name=_display_name(item.technician.full_name, item.technician.first_name),
                first_name=item.technician.first_name,
                recipient_id=recipient_ids.get(item.technician.id),
            )
            for item in warm
        ]
        cold_targets = [
            MailRecipient(
                channel=COLD_CHANNEL,
                candidate_id=lead.id,
                email=lead.email,
                name=_display_name(lead.full_name, lead.first_name, lead.company_name),
                first_name=lead.first_name,
                recipient_id=recipient_ids.get(lead.id) or recipient_ids.get(lead.email),
            )
            for lead in cold
        ]

        settled = await asyncio.gather(
            self._send_channel(job, warm_targets),
            self._send_channel(job, cold_targets),
            return_exceptions=True,
        )
        outcomes: list[SendOutcome] = []
        for channel, targets, batch in zip((WARM_CHANNEL, COLD_CHANNEL), (warm_targets, cold_targets), settled):
            if isinstance(batch, BaseException):
                logger.error("dispatch.channel_failed", extra={"job_id": job_id, "channel": channel, "error": str(batch)})
                outcomes.extend(
                    SendOutcome(channel, target.candidate_id, target.recipient_id, False, str(batch))
                    for target in targets
                )
            else:
                outcomes.extend(batch)

        warm_sent = sum(1 for item in outcomes if item.success and item.channel == WARM_CHANNEL)
        cold_sent = sum(1 for item in outcomes if item.success and item.channel == COLD_CHANNEL)
        for channel, sent in ((WARM_CHANNEL, warm_sent), (COLD_CHANNEL, cold_sent)):
            metrics.increment("dispatch.sent", sent, tags={"channel": channel})
            failed = sum(1 for item in outcomes if not item.success and item.channel == channel)
            metrics.increment("dispatch.send_failures", failed, tags={"channel": channel})

        await self._record_outcomes(job, outreach, outcomes, warm_sent=warm_sent, cold_sent=cold_sent)

        logger.info(
            "dispatch.completed",
            extra={"job_id": job_id, "outreach_id": outreach.id, "warm_sent": warm_sent, "cold_sent": cold_sent},
        )
        return DispatchResult(
            outreach_id=outreach.id,
            job_id=job.id,
            total_recipients=len(warm) + len(cold),
            warm_count=len(warm),
            cold_count=len(cold),
            warm_sent=warm_sent,
            cold_sent=cold_sent,
            trade=job.trade_needed,
            location=", ".join(part for part in (job.city, job.state) if part),
            message=dispatch_message(job, warm_sent, cold_sent),
            top_warm=[
                WarmSummary(
                    id=item.technician.id,
                    name=item.technician.full_name,
                    score=item.score,
                    distance_miles=round(item.distance_miles, 2),
                )
                for item in warm[:SAMPLE_SIZE]
            ],
            cold_leads_sample=[
                ColdSample(email=lead.email, company=lead.company_name, verified=lead.email_verified)
                for lead in cold[:SAMPLE_SIZE]
            ],
            pipeline=stats,
            failures=[
                SendFailure(channel=item.channel, candidate_id=item.candidate_id, error=item.error)
                for item in outcomes
                if not item.success
            ],
        )

    async def _warm_candidates(self, job: Job) -> list[RankedTechnician]:
        org_ids = [org for org in dict.fromkeys((job.org_id, self._config.public_pool_org_id)) if org]
        technicians = await self._datastore.list_warm_candidates(org_ids=org_ids, trade=job.trade_needed)
        reachable = [tech for tech in technicians if tech.email]
        ranked = rank_warm_candidates(
            reachable,
            job_lat=job.lat,
            job_lng=job.lng,
            job_date=job.scheduled_at,
            radius_miles=self._config.max_distance_miles,
            scorer=self._scorer,
        )
        logger.info(
            "dispatch.warm_ranked",
            extra={"job_id": job.id, "candidates": len(technicians), "in_range": len(ranked)},
        )
        return ranked

    async def _cold_candidates(self, job: Job) -> tuple[list[ColdLead], PipelineStats | None]:
        cold = await self._datastore.list_dispatchable_cold_leads(
            state=job.state, trade=job.trade_needed, limit=self._config.cold_lead_limit
        )
        if cold or self._pipeline is None:
            return cold, None

        # Only reached with an empty warm pool, so a pipeline failure is the dispatch failure.
        try:
            result = await self._pipeline.run(job, skip_if_cold_exists=False)
        except DispatchError as exc:
            logger.exception("dispatch.pipeline_failed", extra={"job_id": job.id, "code": exc.code})
            raise
        except Exception as exc:
            logger.exception("dispatch.pipeline_failed", extra={"job_id": job.id})
            raise PipelineError(f"Lead sourcing failed for job {job.id}", code="500_PIPELINE_FAILED") from exc

        stats = PipelineStats.from_result(result)
        if not result.cold_lead_ids:
            return [], stats
        return await self._datastore.get_cold_leads(result.cold_lead_ids), stats

    async def _create_outreach(self, job: Job, *, total: int, stats: PipelineStats | None) -> Outreach:
        pipeline = stats or PipelineStats()
        outreach = Outreach(
            job_id=job.id,
            total_recipients=total,
            status=OutreachStatus.PENDING.value,
            pipeline_ran=pipeline.ran,
            pipeline_selected=pipeline.selected,
            pipeline_verified=pipeline.verified,
            pipeline_moved=pipeline.moved,
            pipeline_credits_used=pipeline.credits_used,
        )
        try:
            return await self._datastore.create_outreach(outreach)
        except DuplicateRecordError as exc:
            winner = await self._datastore.get_outreach_for_job(job.id)
            raise AlreadyDispatchedError(job.id, winner.id if winner else None) from exc

    async def _create_recipients(
        self, outreach: Outreach, warm: Sequence[RankedTechnician], cold: Sequence[ColdLead]
    ) -> dict[str, str]:
        """Insert warm then cold recipients; returns candidate id/email -> recipient id."""
        batches: list[tuple[str, list[Recipient], list[str | None]]] = []
        if warm:
            batches.append(
                (
                    WARM_CHANNEL,
                    [
                        Recipient(
                            outreach_id=outreach.id,
                            technician_id=item.technician.id,
                            lead_source=LeadSource.WARM.value,
                            dispatch_method=DispatchMethod.WARM.value,
                        )
                        for item in warm
                    ],
                    [None for _ in warm],
                )
            )
        if cold:
            batches.append(
                (
                    COLD_CHANNEL,
                    [
                        Recipient(
                            outreach_id=outreach.id,
                            cold_lead_id=lead.id,
                            lead_source=LeadSource.COLD.value,
                            dispatch_method=DispatchMethod.COLD.value,
                        )
                        for lead in cold
                    ],
                    [lead.email for lead in cold],
                )
            )

        mapping: dict[str, str] = {}
        failures = 0
        for channel, rows, emails in batches:
            try:
                created = await self._datastore.create_recipients(rows)
            except DatastoreError:
                failures += 1
                logger.exception(
                    "dispatch.recipients_failed",
                    extra={"outreach_id": outreach.id, "channel": channel, "count": len(rows)},
                )
                continue
            for recipient, email in zip(created, emails):
                key = recipient.technician_id or recipient.cold_lead_id
                if key:
                    mapping[key] = recipient.id
                if email:
                    mapping[email] = recipient.id
        if batches and failures == len(batches):
            raise DatastoreError(f"Failed to create recipients for outreach {outreach.id}")
        return mapping

    async def _send_channel(self, job: Job, targets: Sequence[MailRecipient]) -> list[SendOutcome]:
        if not targets:
            return []
        semaphore = asyncio.Semaphore(max(1, self._config.send_concurrency))

        async def _send_one(target: MailRecipient) -> SendOutcome:
            context = build_template_context(
                job,
                target,
                app_url=self._config.app_url,
                company_name=self._config.company_name,
                company_address=self._config.company_address,
            )
            async with semaphore:
                try:
                    delivered = await self._mailer.send(target, context)
                except Exception as exc:
                    logger.warning(
                        "dispatch.send_failed",
                        extra={"channel": target.channel, "candidate_id": target.candidate_id, "error": str(exc)},
                    )
                    return SendOutcome(target.channel, target.candidate_id, target.recipient_id, False, str(exc))
            if not delivered:
                return SendOutcome(
                    target.channel, target.candidate_id, target.recipient_id, False, "mailer reported failure"
                )
            return SendOutcome(target.channel, target.candidate_id, target.recipient_id, True)

        return list(await asyncio.gather(*(_send_one(target) for target in targets)))

    async def _record_outcomes(
        self,
        job: Job,
        outreach: Outreach,
        outcomes: Sequence[SendOutcome],
        *,
        warm_sent: int,
        cold_sent: int,
    ) -> None:
        """Bookkeeping after sends; failures here are logged and never undo the dispatch."""
        now = self._clock()
        delivered = [item for item in outcomes if item.success]
        steps: list[tuple[str, Callable[[], Any]]] = [
            (
                "mark_recipients_sent",
                lambda: self._datastore.mark_recipients_sent(
                    [item.recipient_id for item in delivered if item.recipient_id]
                ),
            ),
            (
                "mark_technicians_dispatched",
                lambda: self._datastore.mark_technicians_dispatched(
                    [item.candidate_id for item in delivered if item.channel == WARM_CHANNEL], at=now
                ),
            ),
            (
                "mark_cold_leads_dispatched",
                lambda: self._datastore.mark_cold_leads_dispatched(
                    [item.candidate_id for item in delivered if item.channel == COLD_CHANNEL], at=now
                ),
            ),
            (
                "complete_outreach",
                lambda: self._datastore.complete_outreach(
                    outreach.id, warm_sent=warm_sent, cold_sent=cold_sent, status=OutreachStatus.ACTIVE.value
                ),
            ),
            ("update_job_status", lambda: self._datastore.update_job_status(job.id, JobStatus.DISPATCHED.value)),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception:
                logger.exception("dispatch.bookkeeping_failed", extra={"job_id": job.id, "step": name})
