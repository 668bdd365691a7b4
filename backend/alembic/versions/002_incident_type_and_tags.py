"""
002_incident_type_and_tags.py - Incident type, contact preference, tag edits.

Existing incidents default to type "other" and contact by email.

Revision ID: 002_incident_type_and_tags
Revises: 001_initial_schema
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers
revision = "002_incident_type_and_tags"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("incidents", sa.Column("type", sa.String(20), nullable=False, server_default="other"))
    op.add_column(
        "incidents", sa.Column("contact_preference", sa.String(20), nullable=False, server_default="email")
    )
    op.add_column("tags", sa.Column("updated_at", sa.DateTime(), nullable=True))
    op.create_index("ix_incidents_type", "incidents", ["type"])


def downgrade() -> None:
    op.drop_index("ix_incidents_type", table_name="incidents")
    op.drop_column("tags", "updated_at")
    op.drop_column("incidents", "contact_preference")
    op.drop_column("incidents", "type")
