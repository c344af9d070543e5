"""mentor and call window indexes

Revision ID: 0002_mentor_and_call_window_indexes
Revises: 0001_create_transcriptions
Create Date: 2026-10-19

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_mentor_and_call_window_indexes"
down_revision = "0001_create_transcriptions"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        "CREATE INDEX IF NOT EXISTS transcriptions_mentor_idx "
        "ON transcriptions (mentor_id, created_at DESC, call_id DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS transcriptions_call_started_idx "
        "ON transcriptions (call_started_at);"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS transcriptions_call_started_idx;")
    op.execute("DROP INDEX IF EXISTS transcriptions_mentor_idx;")
