"""Create opportunities, search_queries and opportunity_searches tables.

`uq_opportunities_url` is the dedup key the ingestor relies on when two runs
race on the same URL.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "4b9e2f1c7a10"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
UTC_NOW = sa.text("CURRENT_TIMESTAMP")


def _utc_now() -> sa.TextClause:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        return sa.text("timezone('utc', now())")
    return UTC_NOW


def upgrade() -> None:
    now = _utc_now()
    op.create_table(
        "opportunities",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("organization", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("opportunity_type", sa.String(length=32), nullable=False),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("application_deadline", sa.Date(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("amount_min", sa.Float(), nullable=True),
        sa.Column("amount_max", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("eligibility_criteria", sa.Text(), nullable=True),
        sa.Column("application_requirements", sa.Text(), nullable=True),
        sa.Column("benefits", sa.Text(), nullable=True),
        sa.Column("tags", JSON_TYPE, nullable=False),
        sa.Column("source_domain", sa.String(length=255), nullable=True),
        sa.Column("raw_content", sa.Text(), nullable=True),
        sa.Column("extracted_data", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column("last_crawled_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_opportunities"),
        sa.UniqueConstraint("url", name="uq_opportunities_url"),
        sa.CheckConstraint(
            "amount_min IS NULL OR amount_max IS NULL OR amount_min <= amount_max",
            name="ck_opportunities_amount_range",
        ),
    )
    op.create_index("ix_opportunities_type", "opportunities", ["opportunity_type"], unique=False)
    op.create_index("ix_opportunities_country", "opportunities", ["country"], unique=False)
    op.create_index("ix_opportunities_status", "opportunities", ["status"], unique=False)
    op.create_index(
        "ix_opportunities_deadline", "opportunities", ["application_deadline"], unique=False
    )
    op.create_index("ix_opportunities_created_at", "opportunities", ["created_at"], unique=False)

    op.create_table(
        "search_queries",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("filters", JSON_TYPE, nullable=False),
        sa.Column("results_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_search_queries"),
    )

    op.create_table(
        "opportunity_searches",
        sa.Column("search_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="0.8"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.ForeignKeyConstraint(["search_id"], ["search_queries.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("search_id", "opportunity_id", name="pk_opportunity_searches"),
    )
    logger.info("opportunities.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_table("opportunity_searches")
    op.drop_table("search_queries")
    op.drop_index("ix_opportunities_created_at", table_name="opportunities")
    op.drop_index("ix_opportunities_deadline", table_name="opportunities")
    op.drop_index("ix_opportunities_status", table_name="opportunities")
    op.drop_index("ix_opportunities_country", table_name="opportunities")
    op.drop_index("ix_opportunities_type", table_name="opportunities")
    op.drop_table("opportunities")
