"""Create dispatch tables: jobs, technicians, staging, cold leads, outreach, recipients.

`uq_outreach_job` makes a second dispatch for the same job fail at insert time,
and `uq_cold_leads_email` keeps promotion from creating duplicate cold leads.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "5b2e9c1d7f30"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

_NOW = sa.text("timezone('utc', now())")


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
    ]


def _json_list(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )


def upgrade() -> None:
    op.create_table(
        "jobs",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=True),
        sa.Column("job_title", sa.String(), nullable=True),
        sa.Column("trade_needed", sa.String(), nullable=True),
        sa.Column("urgency", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("duration", sa.String(), nullable=True),
        sa.Column("budget_min", sa.Float(), nullable=True),
        sa.Column("budget_max", sa.Float(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(length=8), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="matching"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_jobs"),
    )
    op.create_index("ix_jobs_org_id", "jobs", ["org_id"], unique=False)
    op.create_index("ix_jobs_trade_needed", "jobs", ["trade_needed"], unique=False)
    op.create_index("ix_jobs_state", "jobs", ["state"], unique=False)

    op.create_table(
        "technicians",
        _id(),
        sa.Column("org_id", sa.String(length=36), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("trade_needed", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(length=8), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("signed_up", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("average_rating", sa.Float(), nullable=True),
        sa.Column("response_rate", sa.Float(), nullable=True),
        _json_list("insurance"),
        _json_list("licenses"),
        _json_list("certifications"),
        sa.Column("dispatch_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_technicians"),
    )
    op.create_index("ix_technicians_org_id", "technicians", ["org_id"], unique=False)
    op.create_index("ix_technicians_trade_needed", "technicians", ["trade_needed"], unique=False)

    op.create_table(
        "license_records",
        _id(),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("license_number", sa.String(), nullable=True),
        sa.Column("license_status", sa.String(), nullable=True),
        sa.Column("license_classification", sa.String(), nullable=True),
        sa.Column("license_expiration", sa.String(), nullable=True),
        sa.Column("business_name", sa.String(), nullable=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("job_title", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(length=8), nullable=True),
        sa.Column("zip", sa.String(), nullable=True),
        sa.Column("trade_type", sa.String(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("ai_selected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ai_selection_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_selection_score", sa.Integer(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_verification_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_confidence", sa.Integer(), nullable=True),
        sa.Column("moved_to_cold_leads", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cold_lead_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_license_records"),
    )
    op.create_index(
        "ix_license_records_stage",
        "license_records",
        ["state", "ai_selected", "email_verified", "moved_to_cold_leads"],
        unique=False,
    )

    op.create_table(
        "cold_leads",
        _id(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("supersearch_query", sa.String(), nullable=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("job_title", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(length=8), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("trade_type", sa.String(), nullable=True),
        sa.Column("lead_source", sa.String(), nullable=True),
        sa.Column("license_number", sa.String(), nullable=True),
        sa.Column("license_expiration", sa.String(), nullable=True),
        sa.Column("license_status", sa.String(), nullable=True),
        sa.Column("license_classification", sa.String(), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enriched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrichment_source", sa.String(), nullable=True),
        sa.Column("enrichment_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dispatch_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_cold_leads"),
        sa.UniqueConstraint("email", name="uq_cold_leads_email"),
    )
    op.create_index("ix_cold_leads_state", "cold_leads", ["state"], unique=False)

    op.create_table(
        "work_order_outreach",
        _id(),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("warm_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cold_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warm_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cold_opened", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warm_replied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cold_replied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pipeline_ran", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pipeline_selected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pipeline_verified", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pipeline_moved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pipeline_credits_used", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_work_order_outreach"),
        sa.UniqueConstraint("job_id", name="uq_outreach_job"),
    )

    op.create_table(
        "work_order_recipients",
        _id(),
        sa.Column("outreach_id", sa.String(length=36), nullable=False),
        sa.Column("technician_id", sa.String(length=36), nullable=True),
        sa.Column("cold_lead_id", sa.String(length=36), nullable=True),
        sa.Column("lead_source", sa.String(length=32), nullable=False),
        sa.Column("dispatch_method", sa.String(length=32), nullable=False),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_work_order_recipients"),
        sa.CheckConstraint(
            "(technician_id IS NULL) <> (cold_lead_id IS NULL)",
            name="ck_recipients_single_target",
        ),
    )
    op.create_index(
        "ix_work_order_recipients_outreach_id", "work_order_recipients", ["outreach_id"], unique=False
    )
    logger.info("dispatch.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_work_order_recipients_outreach_id", table_name="work_order_recipients")
    op.drop_table("work_order_recipients")
    op.drop_table("work_order_outreach")
    op.drop_index("ix_cold_leads_state", table_name="cold_leads")
    op.drop_table("cold_leads")
    op.drop_index("ix_license_records_stage", table_name="license_records")
    op.drop_table("license_records")
    op.drop_index("ix_technicians_trade_needed", table_name="technicians")
    op.drop_index("ix_technicians_org_id", table_name="technicians")
    op.drop_table("technicians")
    op.drop_index("ix_jobs_state", table_name="jobs")
    op.drop_index("ix_jobs_trade_needed", table_name="jobs")
    op.drop_index("ix_jobs_org_id", table_name="jobs")
    op.drop_table("jobs")
