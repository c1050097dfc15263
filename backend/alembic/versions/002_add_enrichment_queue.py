"""Add wines_enrichment_queue table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Backfill queue for wines already in the graph that are missing
descriptive fields or grape varietals. Rows reference the vintage and
wine they enrich and cascade away with them.
"""
from typing import Sequence, Union

from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    raw_conn.executescript("""
        CREATE TABLE IF NOT EXISTS wines_enrichment_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vintage_id INTEGER NOT NULL REFERENCES vintages(id) ON DELETE CASCADE,
            wine_id INTEGER NOT NULL REFERENCES wines(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            producer_name TEXT NOT NULL,
            wine_name TEXT NOT NULL,
            year INTEGER,
            region TEXT,
            country TEXT,
            existing_varietals TEXT,
            priority INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'working', 'completed', 'failed')),
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            enrichment_data TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            claimed_at TIMESTAMP,
            processed_at TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        -- At most one open job per vintage
        CREATE UNIQUE INDEX IF NOT EXISTS idx_enrichment_queue_open
        ON wines_enrichment_queue(vintage_id) WHERE status IN ('pending', 'working');

        CREATE INDEX IF NOT EXISTS idx_enrichment_queue_status
        ON wines_enrichment_queue(status, priority DESC, created_at);

        CREATE INDEX IF NOT EXISTS idx_enrichment_queue_user
        ON wines_enrichment_queue(user_id);
    """)


def downgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    raw_conn.execute("DROP INDEX IF EXISTS idx_enrichment_queue_user")
    raw_conn.execute("DROP INDEX IF EXISTS idx_enrichment_queue_status")
    raw_conn.execute("DROP INDEX IF EXISTS idx_enrichment_queue_open")
    raw_conn.execute("DROP TABLE IF EXISTS wines_enrichment_queue")
