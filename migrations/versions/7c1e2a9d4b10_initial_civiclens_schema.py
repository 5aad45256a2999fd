"""initial_civiclens_schema

Creates the issue trust pipeline tables:
  - profiles          — citizens / officers and their civic credit balance
  - issues            — reported civic defects
  - audit_ledger      — append-only history per issue
  - oracle_call_logs  — one row per AI oracle call
  - triage_jobs       — background triage queue

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9d4b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Profiles ──────────────────────────────────────────────────────────
    if "profiles" not in existing:
        op.create_table(
            "profiles",
            sa.Column("id", sa.String(length=64), nullable=False,
                      comment="Identity provider subject (JWT sub)"),
            sa.Column("username", sa.String(length=150), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="citizen",
                      comment="citizen | officer | system"),
            sa.Column("civic_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("avatar_url", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Issues ────────────────────────────────────────────────────────────
    if "issues" not in existing:
        op.create_table(
            "issues",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("reporter_id", sa.String(length=64), nullable=True),
            sa.Column("category", sa.String(length=40), nullable=False),
            sa.Column("subcategory", sa.String(length=80), nullable=True),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("address", sa.String(length=300), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=False),
            sa.Column("longitude", sa.Float(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | ai_analyzing | validated | assigned | in_progress | resolved | rejected"),
            sa.Column("before_image", sa.String(length=500), nullable=True),
            sa.Column("after_image", sa.String(length=500), nullable=True),
            sa.Column("ai_score", sa.Integer(), nullable=True),
            sa.Column("report_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("report_count >= 1", name="ck_issue_report_count_positive"),
            sa.CheckConstraint("latitude BETWEEN -90 AND 90", name="ck_issue_latitude_range"),
            sa.CheckConstraint("longitude BETWEEN -180 AND 180", name="ck_issue_longitude_range"),
            sa.ForeignKeyConstraint(["reporter_id"], ["profiles.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_issue_status", "issues", ["status"])
        op.create_index("idx_issue_geo", "issues", ["latitude", "longitude"])
        op.create_index("idx_issue_reporter", "issues", ["reporter_id"])

    # ── Audit ledger ──────────────────────────────────────────────────────
    if "audit_ledger" not in existing:
        op.create_table(
            "audit_ledger",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("issue_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False,
                      comment="ISSUE_CREATED | STATUS_CHANGE | AI_ANALYSIS | EVIDENCE_UPLOADED"),
            sa.Column("prev_status", sa.String(length=20), nullable=True),
            sa.Column("new_status", sa.String(length=20), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True,
                      comment="NULL = system / AI pipeline"),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["issue_id"], ["issues.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_ledger_issue_ts", "audit_ledger", ["issue_id", "timestamp"])
        op.create_index("idx_ledger_action", "audit_ledger", ["action"])

    # ── Oracle call logs ──────────────────────────────────────────────────
    if "oracle_call_logs" not in existing:
        op.create_table(
            "oracle_call_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("provider", sa.String(length=30), nullable=False),
            sa.Column("model", sa.String(length=80), nullable=False),
            sa.Column("purpose", sa.String(length=40), nullable=True),
            sa.Column("image_count", sa.Integer(), nullable=True),
            sa.Column("latency_ms", sa.Integer(), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=True),
            sa.Column("success", sa.Boolean(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Triage jobs ───────────────────────────────────────────────────────
    if "triage_jobs" not in existing:
        op.create_table(
            "triage_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("issue_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | running | completed | failed"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["issue_id"], ["issues.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_triage_job_issue_status", "triage_jobs", ["issue_id", "status"])


def downgrade():
    op.drop_index("idx_triage_job_issue_status", table_name="triage_jobs")
    op.drop_table("triage_jobs")
    op.drop_table("oracle_call_logs")
    op.drop_index("idx_ledger_action", table_name="audit_ledger")
    op.drop_index("idx_ledger_issue_ts", table_name="audit_ledger")
    op.drop_table("audit_ledger")
    op.drop_index("idx_issue_reporter", table_name="issues")
    op.drop_index("idx_issue_geo", table_name="issues")
    op.drop_index("idx_issue_status", table_name="issues")
    op.drop_table("issues")
    op.drop_table("profiles")
