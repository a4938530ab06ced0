"""SQLModel mappings for jobs, candidates, staged leads, and dispatch bookkeeping."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


def _timestamp(*, nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class JobStatus(str, Enum):
    MATCHING = "matching"
    PENDING = "pending"
    DISPATCHED = "dispatched"
    ASSIGNED = "assigned"
    COMPLETED = "completed"


class OutreachStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class LeadSource(str, Enum):
    WARM = "warm"
    COLD = "cold_supersearch"


class DispatchMethod(str, Enum):
    WARM = "sendgrid_warm"
    COLD = "sendgrid_cold"


class Job(SQLModel, table=True):
    """Unit of work that needs a contractor."""

    __tablename__ = "jobs"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    org_id: str | None = Field(default=None, index=True, max_length=36)
    job_title: str | None = None
    trade_needed: str | None = Field(default=None, index=True)
    urgency: str | None = None
    description: str | None = None
    duration: str | None = None
    budget_min: float | None = None
    budget_max: float | None = None
    city: str | None = None
    state: str | None = Field(default=None, index=True, max_length=8)
    lat: float | None = None
    lng: float | None = None
    scheduled_at: datetime | None = Field(default=None, sa_column=_timestamp())
    status: str = Field(default=JobStatus.MATCHING.value, max_length=32)
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))

    @property
    def location_label(self) -> str:
        label = ", ".join(part for part in (self.city, self.state) if part)
        return label or "this area"


class Technician(SQLModel, table=True):
    """Registered contractor in the warm pool."""

    __tablename__ = "technicians"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    org_id: str = Field(index=True, max_length=36)
    full_name: str | None = None
    first_name: str | None = None
    email: str | None = None
    phone: str | None = None
    trade_needed: str | None = Field(default=None, index=True)
    city: str | None = None
    state: str | None = Field(default=None, max_length=8)
    lat: float | None = None
    lng: float | None = None
    is_available: bool = True
    signed_up: bool = True
    unsubscribed_at: datetime | None = Field(default=None, sa_column=_timestamp())
    average_rating: float | None = None
    response_rate: float | None = None
    insurance: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    licenses: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    certifications: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    dispatch_count: int = 0
    last_dispatched_at: datetime | None = Field(default=None, sa_column=_timestamp())


class LicenseRecord(SQLModel, table=True):
    """Harvested, unverified lead staged for AI selection and email discovery."""

    __tablename__ = "license_records"
    __table_args__ = (
        sa.Index("ix_license_records_stage", "state", "ai_selected", "email_verified", "moved_to_cold_leads"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    source: str | None = None
    license_number: str | None = None
    license_status: str | None = None
    license_classification: str | None = None
    license_expiration: str | None = None
    business_name: str | None = None
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    job_title: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = Field(default=None, max_length=8)
    zip: str | None = None
    trade_type: str | None = None
    lat: float | None = None
    lng: float | None = None
    ai_selected: bool = False
    ai_selection_date: datetime | None = Field(default=None, sa_column=_timestamp())
    ai_selection_score: int | None = None
    email: str | None = None
    email_verified: bool = False
    email_verification_date: datetime | None = Field(default=None, sa_column=_timestamp())
    verification_confidence: int | None = None
    moved_to_cold_leads: bool = False
    cold_lead_id: str | None = Field(default=None, max_length=36)
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))


class ColdLead(SQLModel, table=True):
    """Promoted lead with a verified email, dispatchable through the cold channel."""

    __tablename__ = "cold_leads"
    __table_args__ = (sa.UniqueConstraint("email", name="uq_cold_leads_email"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    email: str = Field(max_length=320)
    supersearch_query: str | None = None
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    job_title: str | None = None
    phone: str | None = None
    city: str | None = None
    state: str | None = Field(default=None, index=True, max_length=8)
    country: str | None = None
    address: str | None = None
    trade_type: str | None = None
    lead_source: str | None = None
    license_number: str | None = None
    license_expiration: str | None = None
    license_status: str | None = None
    license_classification: str | None = None
    email_verified: bool = False
    enriched_at: datetime | None = Field(default=None, sa_column=_timestamp())
    enrichment_source: str | None = None
    enrichment_credits_used: int = 0
    dispatch_count: int = 0
    last_dispatched_at: datetime | None = Field(default=None, sa_column=_timestamp())
    unsubscribed_at: datetime | None = Field(default=None, sa_column=_timestamp())
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))


class Outreach(SQLModel, table=True):
    """The single dispatch event for one job."""

    __tablename__ = "work_order_outreach"
    __table_args__ = (sa.UniqueConstraint("job_id", name="uq_outreach_job"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    job_id: str = Field(max_length=36)
    total_recipients: int = 0
    status: str = Field(default=OutreachStatus.PENDING.value, max_length=32)
    warm_sent: int = 0
    cold_sent: int = 0
    warm_opened: int = 0
    cold_opened: int = 0
    warm_replied: int = 0
    cold_replied: int = 0
    pipeline_ran: bool = False
    pipeline_selected: int = 0
    pipeline_verified: int = 0
    pipeline_moved: int = 0
    pipeline_credits_used: int = 0
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))


class Recipient(SQLModel, table=True):
    """One addressable target within an outreach; exactly one of technician_id/cold_lead_id is set."""

    __tablename__ = "work_order_recipients"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    outreach_id: str = Field(index=True, max_length=36)
    technician_id: str | None = Field(default=None, max_length=36)
    cold_lead_id: str | None = Field(default=None, max_length=36)
    lead_source: str = Field(max_length=32)
    dispatch_method: str = Field(max_length=32)
    email_sent: bool = False
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamp(nullable=False))


_RecordT = TypeVar("_RecordT", bound=SQLModel)


def clone(record: _RecordT) -> _RecordT:
    """Detached copy of a table model, used where rows must not alias each other."""
    return type(record)(**record.model_dump())
