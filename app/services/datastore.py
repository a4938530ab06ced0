"""Persistence backends for jobs, candidates, staged leads, and outreach bookkeeping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.models.records import (
    ColdLead,
    Job,
    LicenseRecord,
    Outreach,
    Recipient,
    Technician,
    clone,
)
from app.services.errors import DatastoreError, DuplicateRecordError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Datastore(Protocol):
    """Storage contract used by the dispatch orchestrator and sourcing pipeline."""

    async def get_job(self, job_id: str) -> Job | None:
        ...

    async def update_job_status(self, job_id: str, status: str) -> None:
        ...

    async def list_warm_candidates(self, *, org_ids: Sequence[str], trade: str | None) -> list[Technician]:
        ...

    async def mark_technicians_dispatched(self, technician_ids: Sequence[str], *, at: datetime) -> None:
        ...

    async def list_unselected_staging(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        ...

    async def mark_staging_selected(self, record_ids: Sequence[str], *, score: int, at: datetime) -> None:
        ...

    async def list_staging_for_verification(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        ...

    async def record_verification(
        self,
        record_id: str,
        *,
        email: str | None,
        verified: bool,
        confidence: int,
        at: datetime,
    ) -> None:
        ...

    async def list_staging_ready_to_promote(
        self, *, state: str | None, min_confidence: int
    ) -> list[LicenseRecord]:
        ...

    async def mark_staging_moved(self, record_id: str, *, cold_lead_id: str | None, at: datetime) -> None:
        ...

    async def count_staging_pending_verification(self, *, state: str | None) -> int:
        ...

    async def count_undispatched_cold_leads(self, *, state: str | None, trade: str | None) -> int:
        ...

    async def list_dispatchable_cold_leads(
        self, *, state: str | None, trade: str | None, limit: int
    ) -> list[ColdLead]:
        ...

    async def get_cold_leads(self, cold_lead_ids: Sequence[str]) -> list[ColdLead]:
        ...

    async def find_existing_cold_lead_emails(self, emails: Iterable[str]) -> set[str]:
        ...

    async def insert_cold_lead(self, lead: ColdLead) -> ColdLead:
        ...

    async def mark_cold_leads_dispatched(self, cold_lead_ids: Sequence[str], *, at: datetime) -> None:
        ...

    async def get_outreach_for_job(self, job_id: str) -> Outreach | None:
        ...

    async def create_outreach(self, outreach: Outreach) -> Outreach:
        ...

    async def complete_outreach(
        self, outreach_id: str, *, warm_sent: int, cold_sent: int, status: str
    ) -> None:
        ...

    async def create_recipients(self, recipients: Sequence[Recipient]) -> list[Recipient]:
        ...

    async def mark_recipients_sent(self, recipient_ids: Sequence[str]) -> None:
        ...


def _same_text(left: str | None, right: str | None) -> bool:
    return (left or "") == (right or "")


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _is_dispatchable(lead: ColdLead, state: str | None, trade: str | None) -> bool:
    return (
        _same_text(lead.state, state)
        and _same_text(lead.trade_type, trade)
        and lead.unsubscribed_at is None
        and lead.last_dispatched_at is None
    )


def _dispatchable_cold_lead_clauses(state: str | None, trade: str | None) -> list[Any]:
    return [
        ColdLead.state == state,
        ColdLead.trade_type == trade,
        ColdLead.unsubscribed_at.is_(None),
        ColdLead.last_dispatched_at.is_(None),
    ]


def _sort_key(value: datetime | None) -> float:
    return value.timestamp() if value else 0.0


class InMemoryDatastore(Datastore):
    """Asyncio-safe datastore used for local development and tests.

    Enforces the same uniqueness rules as the SQL schema: one outreach per job
    and one cold lead per (case-insensitive) email.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.technicians: dict[str, Technician] = {}
        self.staging: dict[str, LicenseRecord] = {}
        self.cold_leads: dict[str, ColdLead] = {}
        self.outreach: dict[str, Outreach] = {}
        self.recipients: dict[str, Recipient] = {}
        self._lock = asyncio.Lock()

    def add(self, *records: SQLModel) -> None:
        """Seed rows directly, bypassing the async API."""
        for record in records:
            if isinstance(record, Job):
                self.jobs[record.id] = record
            elif isinstance(record, Technician):
                self.technicians[record.id] = record
            elif isinstance(record, LicenseRecord):
                self.staging[record.id] = record
            elif isinstance(record, ColdLead):
                record.email = _normalize_email(record.email)
                self.cold_leads[record.id] = record
            elif isinstance(record, Outreach):
                self.outreach[record.id] = record
            elif isinstance(record, Recipient):
                self.recipients[record.id] = record
            else:
                raise TypeError(f"Unsupported record type: {type(record).__name__}")

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self.jobs.get(job_id)
            return clone(job) if job else None

    async def update_job_status(self, job_id: str, status: str) -> None:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise DatastoreError(f"Job {job_id} not found for status update")
            job.status = status
            job.updated_at = _utcnow()

    async def list_warm_candidates(self, *, org_ids: Sequence[str], trade: str | None) -> list[Technician]:
        allowed = set(org_ids)
        async with self._lock:
            return [
                clone(tech)
                for tech in self.technicians.values()
                if tech.org_id in allowed
                and _same_text(tech.trade_needed, trade)
                and tech.is_available
                and tech.signed_up
                and tech.unsubscribed_at is None
            ]

    async def mark_technicians_dispatched(self, technician_ids: Sequence[str], *, at: datetime) -> None:
        async with self._lock:
            for technician_id in technician_ids:
                tech = self.technicians.get(technician_id)
                if tech is not None:
                    tech.dispatch_count += 1
                    tech.last_dispatched_at = at

    async def list_unselected_staging(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        async with self._lock:
            matches = [
                record
                for record in self.staging.values()
                if not record.ai_selected and _same_text(record.state, state)
            ]
            matches.sort(key=lambda record: _sort_key(record.created_at), reverse=True)
            return [clone(record) for record in matches[:limit]]

    async def mark_staging_selected(self, record_ids: Sequence[str], *, score: int, at: datetime) -> None:
        async with self._lock:
            for record_id in record_ids:
                record = self.staging.get(record_id)
                if record is None:
                    continue
                record.ai_selected = True
                record.ai_selection_date = at
                record.ai_selection_score = score
                record.updated_at = at

    async def list_staging_for_verification(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        async with self._lock:
            matches = [
                record
                for record in self.staging.values()
                if record.ai_selected
                and not record.email_verified
                and record.email_verification_date is None
                and not record.moved_to_cold_leads
                and _same_text(record.state, state)
            ]
            matches.sort(key=lambda record: _sort_key(record.ai_selection_date), reverse=True)
            return [clone(record) for record in matches[:limit]]

    async def record_verification(
        self,
        record_id: str,
        *,
        email: str | None,
        verified: bool,
        confidence: int,
        at: datetime,
    ) -> None:
        async with self._lock:
            record = self.staging.get(record_id)
            if record is None:
                raise DatastoreError(f"Staging record {record_id} not found")
            record.email = email
            record.email_verified = verified
            record.email_verification_date = at
            record.verification_confidence = confidence
            record.updated_at = at

    async def list_staging_ready_to_promote(
        self, *, state: str | None, min_confidence: int
    ) -> list[LicenseRecord]:
        async with self._lock:
            return [
                clone(record)
                for record in self.staging.values()
                if record.ai_selected
                and record.email_verified
                and not record.moved_to_cold_leads
                and record.email
                and (record.verification_confidence or 0) >= min_confidence
                and _same_text(record.state, state)
            ]

    async def mark_staging_moved(self, record_id: str, *, cold_lead_id: str | None, at: datetime) -> None:
        async with self._lock:
            record = self.staging.get(record_id)
            if record is None:
                raise DatastoreError(f"Staging record {record_id} not found")
            record.moved_to_cold_leads = True
            if cold_lead_id:
                record.cold_lead_id = cold_lead_id
            record.updated_at = at

    async def count_staging_pending_verification(self, *, state: str | None) -> int:
        async with self._lock:
            return sum(
                1
                for record in self.staging.values()
                if record.ai_selected
                and not record.email_verified
                and record.email_verification_date is None
                and _same_text(record.state, state)
            )

    async def count_undispatched_cold_leads(self, *, state: str | None, trade: str | None) -> int:
        async with self._lock:
            return sum(1 for lead in self.cold_leads.values() if _is_dispatchable(lead, state, trade))

    async def list_dispatchable_cold_leads(
        self, *, state: str | None, trade: str | None, limit: int
    ) -> list[ColdLead]:
        async with self._lock:
            matches = [lead for lead in self.cold_leads.values() if _is_dispatchable(lead, state, trade)]
            return [clone(lead) for lead in matches[:limit]]

    async def get_cold_leads(self, cold_lead_ids: Sequence[str]) -> list[ColdLead]:
        async with self._lock:
            return [clone(self.cold_leads[lead_id]) for lead_id in cold_lead_ids if lead_id in self.cold_leads]

    async def find_existing_cold_lead_emails(self, emails: Iterable[str]) -> set[str]:
        wanted = {_normalize_email(email) for email in emails if email}
        async with self._lock:
            return {lead.email for lead in self.cold_leads.values() if lead.email in wanted}

    async def insert_cold_lead(self, lead: ColdLead) -> ColdLead:
        stored = clone(lead)
        stored.email = _normalize_email(stored.email)
        async with self._lock:
            if any(existing.email == stored.email for existing in self.cold_leads.values()):
                raise DuplicateRecordError(f"Cold lead with email {stored.email} already exists")
            self.cold_leads[stored.id] = stored
            return clone(stored)

    async def mark_cold_leads_dispatched(self, cold_lead_ids: Sequence[str], *, at: datetime) -> None:
        async with self._lock:
            for lead_id in cold_lead_ids:
                lead = self.cold_leads.get(lead_id)
                if lead is not None:
                    lead.dispatch_count += 1
                    lead.last_dispatched_at = at
                    lead.updated_at = at

    async def get_outreach_for_job(self, job_id: str) -> Outreach | None:
        async with self._lock:
            for outreach in self.outreach.values():
                if outreach.job_id == job_id:
                    return clone(outreach)
            return None

    async def create_outreach(self, outreach: Outreach) -> Outreach:
        stored = clone(outreach)
        async with self._lock:
            if any(existing.job_id == stored.job_id for existing in self.outreach.values()):
                raise DuplicateRecordError(f"Outreach for job {stored.job_id} already exists")
            self.outreach[stored.id] = stored
            return clone(stored)

    async def complete_outreach(
        self, outreach_id: str, *, warm_sent: int, cold_sent: int, status: str
    ) -> None:
        async with self._lock:
            outreach = self.outreach.get(outreach_id)
            if outreach is None:
                raise DatastoreError(f"Outreach {outreach_id} not found")
            outreach.warm_sent = warm_sent
            outreach.cold_sent = cold_sent
            outreach.status = status
            outreach.updated_at = _utcnow()

    async def create_recipients(self, recipients: Sequence[Recipient]) -> list[Recipient]:
        stored = [clone(recipient) for recipient in recipients]
        async with self._lock:
            for recipient in stored:
                self.recipients[recipient.id] = recipient
            return [clone(recipient) for recipient in stored]

    async def mark_recipients_sent(self, recipient_ids: Sequence[str]) -> None:
        async with self._lock:
            for recipient_id in recipient_ids:
                recipient = self.recipients.get(recipient_id)
                if recipient is not None:
                    recipient.email_sent = True


class SqlDatastore(Datastore):
    """SQLAlchemy asyncio datastore backed by Postgres/Supabase (or SQLite in tests)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False, **engine_kwargs: Any) -> "SqlDatastore":
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDatastore.")
        engine = create_async_engine(database_url, echo=echo, **engine_kwargs)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        return cls(factory, engine=engine)

    async def create_schema(self) -> None:
        if self._engine is None:
            raise DatastoreError("create_schema requires an engine-owning datastore")
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning("datastore.integrity_error", extra={"operation": operation})
                raise DuplicateRecordError(f"{operation} violated a unique constraint") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("datastore.error", extra={"operation": operation})
                raise DatastoreError(f"{operation} failed") from exc

    async def _all(self, operation: str, statement: Any) -> list[Any]:
        async with self._session(operation) as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def _scalar(self, operation: str, statement: Any) -> Any:
        async with self._session(operation) as session:
            result = await session.execute(statement)
            return result.scalar_one()

    async def _write(self, operation: str, statement: Any) -> None:
        async with self._session(operation) as session:
            await session.execute(statement)

    async def get_job(self, job_id: str) -> Job | None:
        async with self._session("get_job") as session:
            return await session.get(Job, job_id)

    async def update_job_status(self, job_id: str, status: str) -> None:
        await self._write(
            "update_job_status",
            sa.update(Job).where(Job.id == job_id).values(status=status, updated_at=_utcnow()),
        )

    async def list_warm_candidates(self, *, org_ids: Sequence[str], trade: str | None) -> list[Technician]:
        statement = sa.select(Technician).where(
            Technician.org_id.in_(list(org_ids)),
            Technician.trade_needed == trade,
            Technician.is_available.is_(True),
            Technician.signed_up.is_(True),
            Technician.unsubscribed_at.is_(None),
        )
        return await self._all("list_warm_candidates", statement)

    async def mark_technicians_dispatched(self, technician_ids: Sequence[str], *, at: datetime) -> None:
        if not technician_ids:
            return
        await self._write(
            "mark_technicians_dispatched",
            sa.update(Technician)
            .where(Technician.id.in_(list(technician_ids)))
            .values(dispatch_count=Technician.dispatch_count + 1, last_dispatched_at=at),
        )

    async def list_unselected_staging(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        statement = (
            sa.select(LicenseRecord)
            .where(LicenseRecord.ai_selected.is_(False), LicenseRecord.state == state)
            .order_by(LicenseRecord.created_at.desc())
            .limit(limit)
        )
        return await self._all("list_unselected_staging", statement)

    async def mark_staging_selected(self, record_ids: Sequence[str], *, score: int, at: datetime) -> None:
        if not record_ids:
            return
        await self._write(
            "mark_staging_selected",
            sa.update(LicenseRecord)
            .where(LicenseRecord.id.in_(list(record_ids)))
            .values(ai_selected=True, ai_selection_date=at, ai_selection_score=score, updated_at=at),
        )

    async def list_staging_for_verification(self, *, state: str | None, limit: int) -> list[LicenseRecord]:
        statement = (
            sa.select(LicenseRecord)
            .where(
                LicenseRecord.ai_selected.is_(True),
                LicenseRecord.email_verified.is_(False),
                LicenseRecord.email_verification_date.is_(None),
                LicenseRecord.moved_to_cold_leads.is_(False),
                LicenseRecord.state == state,
            )
            .order_by(LicenseRecord.ai_selection_date.desc())
            .limit(limit)
        )
        return await self._all("list_staging_for_verification", statement)

    async def record_verification(
        self,
        record_id: str,
        *,
        email: str | None,
        verified: bool,
        confidence: int,
        at: datetime,
    ) -> None:
        await self._write(
            "record_verification",
            sa.update(LicenseRecord)
            .where(LicenseRecord.id == record_id)
            .values(
                email=email,
                email_verified=verified,
                email_verification_date=at,
                verification_confidence=confidence,
                updated_at=at,
            ),
        )

    async def list_staging_ready_to_promote(
        self, *, state: str | None, min_confidence: int
    ) -> list[LicenseRecord]:
        statement = sa.select(LicenseRecord).where(
            LicenseRecord.ai_selected.is_(True),
            LicenseRecord.email_verified.is_(True),
            LicenseRecord.moved_to_cold_leads.is_(False),
            LicenseRecord.email.is_not(None),
            LicenseRecord.verification_confidence >= min_confidence,
            LicenseRecord.state == state,
        )
        return await self._all("list_staging_ready_to_promote", statement)

    async def mark_staging_moved(self, record_id: str, *, cold_lead_id: str | None, at: datetime) -> None:
        values: dict[str, Any] = {"moved_to_cold_leads": True, "updated_at": at}
        if cold_lead_id:
            values["cold_lead_id"] = cold_lead_id
        await self._write(
            "mark_staging_moved",
            sa.update(LicenseRecord).where(LicenseRecord.id == record_id).values(**values),
        )

    async def count_staging_pending_verification(self, *, state: str | None) -> int:
        statement = sa.select(sa.func.count()).select_from(LicenseRecord).where(
            LicenseRecord.ai_selected.is_(True),
            LicenseRecord.email_verified.is_(False),
            LicenseRecord.email_verification_date.is_(None),
            LicenseRecord.state == state,
        )
        return int(await self._scalar("count_staging_pending_verification", statement))

    async def count_undispatched_cold_leads(self, *, state: str | None, trade: str | None) -> int:
        statement = (
            sa.select(sa.func.count())
            .select_from(ColdLead)
            .where(*_dispatchable_cold_lead_clauses(state, trade))
        )
        return int(await self._scalar("count_undispatched_cold_leads", statement))

    async def list_dispatchable_cold_leads(
        self, *, state: str | None, trade: str | None, limit: int
    ) -> list[ColdLead]:
        statement = (
            sa.select(ColdLead)
            .where(*_dispatchable_cold_lead_clauses(state, trade))
            .limit(limit)
        )
        return await self._all("list_dispatchable_cold_leads", statement)

    async def get_cold_leads(self, cold_lead_ids: Sequence[str]) -> list[ColdLead]:
        if not cold_lead_ids:
            return []
        statement = sa.select(ColdLead).where(ColdLead.id.in_(list(cold_lead_ids)))
        leads = {lead.id: lead for lead in await self._all("get_cold_leads", statement)}
        return [leads[lead_id] for lead_id in cold_lead_ids if lead_id in leads]

    async def find_existing_cold_lead_emails(self, emails: Iterable[str]) -> set[str]:
        wanted = sorted({_normalize_email(email) for email in emails if email})
        if not wanted:
            return set()
        statement = sa.select(ColdLead.email).where(ColdLead.email.in_(wanted))
        return set(await self._all("find_existing_cold_lead_emails", statement))

    async def insert_cold_lead(self, lead: ColdLead) -> ColdLead:
        stored = clone(lead)
        stored.email = _normalize_email(stored.email)
        async with self._session("insert_cold_lead") as session:
            session.add(stored)
        return stored

    async def mark_cold_leads_dispatched(self, cold_lead_ids: Sequence[str], *, at: datetime) -> None:
        if not cold_lead_ids:
            return
        await self._write(
            "mark_cold_leads_dispatched",
            sa.update(ColdLead)
            .where(ColdLead.id.in_(list(cold_lead_ids)))
            .values(dispatch_count=ColdLead.dispatch_count + 1, last_dispatched_at=at, updated_at=at),
        )

    async def get_outreach_for_job(self, job_id: str) -> Outreach | None:
        statement = sa.select(Outreach).where(Outreach.job_id == job_id).limit(1)
        rows = await self._all("get_outreach_for_job", statement)
        return rows[0] if rows else None

    async def create_outreach(self, outreach: Outreach) -> Outreach:
        stored = clone(outreach)
        async with self._session("create_outreach") as session:
            session.add(stored)
        return stored

    async def complete_outreach(
        self, outreach_id: str, *, warm_sent: int, cold_sent: int, status: str
    ) -> None:
        await self._write(
            "complete_outreach",
            sa.update(Outreach)
            .where(Outreach.id == outreach_id)
            .values(warm_sent=warm_sent, cold_sent=cold_sent, status=status, updated_at=_utcnow()),
        )

    async def create_recipients(self, recipients: Sequence[Recipient]) -> list[Recipient]:
        stored = [clone(recipient) for recipient in recipients]
        if not stored:
            return []
        async with self._session("create_recipients") as session:
            session.add_all(stored)
        return stored

    async def mark_recipients_sent(self, recipient_ids: Sequence[str]) -> None:
        if not recipient_ids:
            return
        await self._write(
            "mark_recipients_sent",
            sa.update(Recipient).where(Recipient.id.in_(list(recipient_ids))).values(email_sent=True),
        )
