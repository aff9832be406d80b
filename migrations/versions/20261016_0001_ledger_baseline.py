"""Credit ledger baseline schema from SQLAlchemy models.

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 00:00:00
"""
from __future__ import annotations

from alembic import op

from server.creditmeter.core import models  # noqa: F401
from server.creditmeter.core.db import Base

# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
