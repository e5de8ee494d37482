from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()


sync_runs = sa.Table(
    "sync_runs",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("run_id", sa.String(length=64)),
    sa.Column("success", sa.Boolean(), nullable=False),
    sa.Column("filename", sa.Text()),
    sa.Column("error", sa.Text()),
    sa.Column("error_type", sa.String(length=64)),
    sa.Column("report_days", sa.Integer(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_sync_runs_created_at", "created_at"),
)


reports = sa.Table(
    "reports",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("filename", sa.String(length=255), nullable=False),
    sa.Column("url", sa.Text(), nullable=False),
    sa.Column("file_path", sa.Text(), nullable=False),
    sa.Column("source_filename", sa.Text()),
    sa.Column("size_bytes", sa.BigInteger(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("filename", name="uq_reports_filename"),
    sa.Index("ix_reports_created_at", "created_at"),
)


sync_leases = sa.Table(
    "sync_leases",
    metadata,
    sa.Column("name", sa.String(length=64), primary_key=True),
    sa.Column("holder", sa.String(length=64), nullable=False),
    sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
)
