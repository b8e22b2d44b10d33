"""scan_pipeline_schema

Revision ID: 001_scan_pipeline
Revises:
Create Date: 2026-10-19

Creates the tables used by the scan pipeline:
- morph_archetypes (reference archetypes, read-only for the API)
- body_scans (one immutable row per committed scan)
- user_profile (avatar section lives in the preferences JSONB)

All DDL is guarded by existence checks so the migration is idempotent and
safe to run even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects import postgresql

revision = '001_scan_pipeline'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def upgrade() -> None:
    conn = op.get_bind()

    # ── morph_archetypes ──────────────────────────────────────────────────────
    if not _table_exists(conn, 'morph_archetypes'):
        op.create_table(
            'morph_archetypes',
            sa.Column('id', sa.String(64), primary_key=True),
            sa.Column('name', sa.String(255), nullable=True),
            sa.Column('gender', sa.String(20), nullable=False),
            sa.Column('gender_code', sa.String(5), nullable=True),
            sa.Column('level', sa.String(50), nullable=True),
            sa.Column('obesity', sa.String(50), nullable=True),
            sa.Column('muscularity', sa.String(50), nullable=True),
            sa.Column('morphotype', sa.String(10), nullable=True),
            sa.Column('bmi_range', postgresql.JSONB, nullable=True),
            sa.Column('morph_values', postgresql.JSONB, nullable=False, server_default='{}'),
            sa.Column('limb_masses', postgresql.JSONB, nullable=False, server_default='{}'),
        )
        op.create_index('ix_morph_archetypes_gender', 'morph_archetypes', ['gender'])
        logger.info("Created table: morph_archetypes")
    else:
        logger.info("Table morph_archetypes already exists — skipping create")

    # ── body_scans ────────────────────────────────────────────────────────────
    if not _table_exists(conn, 'body_scans'):
        op.create_table(
            'body_scans',
            sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
            sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
            sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('metrics', postgresql.JSONB, nullable=False, server_default='{}'),
        )
        op.create_index('ix_body_scans_user_ts', 'body_scans', ['user_id', 'timestamp'])
        logger.info("Created table: body_scans")
    else:
        logger.info("Table body_scans already exists — skipping create")

    # ── user_profile ──────────────────────────────────────────────────────────
    if not _table_exists(conn, 'user_profile'):
        op.create_table(
            'user_profile',
            sa.Column('user_id', postgresql.UUID(as_uuid=False), primary_key=True),
            sa.Column('display_name', sa.Text, nullable=True),
            sa.Column('sex', sa.String(20), nullable=True),
            sa.Column('preferences', postgresql.JSONB, nullable=False, server_default='{}'),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: user_profile")
    else:
        logger.info("Table user_profile already exists — skipping create")


def downgrade() -> None:
    conn = op.get_bind()

    for table in ('user_profile', 'body_scans', 'morph_archetypes'):
        if _table_exists(conn, table):
            op.drop_table(table)
