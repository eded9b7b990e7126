"""Baseline schema.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op

from propertyhub.database import Base
from propertyhub.models import models  # noqa: F401

# revision identifiers, used by Alembic.
revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    Base.metadata.create_all(bind=op.get_bind())


def downgrade():
    Base.metadata.drop_all(bind=op.get_bind())
