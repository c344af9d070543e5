"""create transcriptions table

Revision ID: 0001_create_transcriptions
Revises:
Create Date: 2026-10-19

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_create_transcriptions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transcriptions (
          call_id            TEXT PRIMARY KEY,
          participant_id     TEXT NOT NULL,
          text               TEXT NOT NULL,
          s3_url             TEXT,
          created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
          mentor_id          TEXT,
          session_id         TEXT,
          transcript_txt_url TEXT,
          transcript_vtt_url TEXT,
          segments           JSONB NOT NULL DEFAULT '[]'::jsonb,
          word_count         INT NOT NULL DEFAULT 0,
          duration_seconds   DOUBLE PRECISION,
          language           TEXT,
          call_started_at    TIMESTAMPTZ,
          call_ended_at      TIMESTAMPTZ,
          metadata           JSONB NOT NULL DEFAULT '{}'::jsonb
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS transcriptions_created_idx "
        "ON transcriptions (created_at DESC, call_id DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS transcriptions_participant_idx "
        "ON transcriptions (participant_id, created_at DESC, call_id DESC);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS transcriptions;")
