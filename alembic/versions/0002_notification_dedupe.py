"""notifications: per-user dedupe key

Revision ID: 0002_notification_dedupe
Revises: 0001_init
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "0002_notification_dedupe"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.add_column("notifications", sa.Column("dedupe_key", sa.String(), nullable=True))
  op.create_unique_constraint("ux_notifications_user_dedupe_key", "notifications", ["user_id", "dedupe_key"])


def downgrade() -> None:
  op.drop_constraint("ux_notifications_user_dedupe_key", "notifications", type_="unique")
  op.drop_column("notifications", "dedupe_key")
