"""Initial schema - wine graph, scans and the scan queue.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

Creates reference tables (regions, producers, wines, vintages,
grape_varietals, wine_varietals), user tables (scans, tastings) and the
wines_added scan queue.

Dictionary tables carry a name_key column (casefolded, whitespace
collapsed) with a unique constraint, so concurrent inserts of the same
name collide at the storage layer and the loser re-fetches.
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Complete schema SQL inlined for immutability.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS regions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    country TEXT,
    country_key TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (name_key, country_key)
);

CREATE TABLE IF NOT EXISTS producers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL UNIQUE,
    region_id INTEGER REFERENCES regions(id) ON DELETE SET NULL,
    website TEXT,
    address TEXT,
    city TEXT,
    postal_code TEXT,
    latitude REAL,
    longitude REAL,
    location_confidence TEXT CHECK (location_confidence IN ('exact', 'approximate', 'region')),
    location_note TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS wines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    producer_id INTEGER NOT NULL REFERENCES producers(id) ON DELETE CASCADE,
    is_nv INTEGER NOT NULL DEFAULT 0,
    wine_type TEXT,
    color TEXT,
    style TEXT,
    food_pairings TEXT,
    serving_temperature TEXT,
    tasting_notes TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (producer_id, name_key)
);

CREATE TABLE IF NOT EXISTS vintages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wine_id INTEGER NOT NULL REFERENCES wines(id) ON DELETE CASCADE,
    year INTEGER,
    abv REAL,
    vineyard_id INTEGER,
    climate_zone_id INTEGER,
    soil_type_id INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (wine_id, year)
);

-- NULL years are distinct under UNIQUE, so the NV bucket needs its own index
CREATE UNIQUE INDEX IF NOT EXISTS idx_vintages_nv
ON vintages(wine_id) WHERE year IS NULL;

CREATE TABLE IF NOT EXISTS grape_varietals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL UNIQUE,
    parent_a INTEGER REFERENCES grape_varietals(id) ON DELETE SET NULL,
    parent_b INTEGER REFERENCES grape_varietals(id) ON DELETE SET NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS wine_varietals (
    vintage_id INTEGER NOT NULL REFERENCES vintages(id) ON DELETE CASCADE,
    varietal_id INTEGER NOT NULL REFERENCES grape_varietals(id) ON DELETE CASCADE,
    percent REAL,
    PRIMARY KEY (vintage_id, varietal_id)
);

CREATE TABLE IF NOT EXISTS scans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    image_path TEXT NOT NULL,
    scan_image_url TEXT,
    ocr_text TEXT,
    matched_vintage_id INTEGER REFERENCES vintages(id) ON DELETE SET NULL,
    confidence REAL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_scans_user ON scans(user_id);

-- Scan queue
CREATE TABLE IF NOT EXISTS wines_added (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    scan_id INTEGER REFERENCES scans(id) ON DELETE SET NULL,
    image_url TEXT NOT NULL,
    ocr_text TEXT,
    idempotency_key TEXT UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'working', 'completed', 'failed')),
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    processed_data TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    claimed_at TIMESTAMP,
    processed_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_wines_added_status
ON wines_added(status, created_at);

CREATE INDEX IF NOT EXISTS idx_wines_added_user
ON wines_added(user_id);

CREATE TABLE IF NOT EXISTS tastings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    vintage_id INTEGER NOT NULL REFERENCES vintages(id) ON DELETE CASCADE,
    scan_id INTEGER REFERENCES scans(id) ON DELETE SET NULL,
    verdict INTEGER,
    notes TEXT,
    tasted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (scan_id)
);

CREATE INDEX IF NOT EXISTS idx_tastings_user ON tastings(user_id);
"""


def upgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection
    raw_conn.executescript(SCHEMA_SQL)


def downgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    # Drop tables in reverse dependency order
    tables = [
        "tastings",
        "wines_added",
        "scans",
        "wine_varietals",
        "grape_varietals",
        "vintages",
        "wines",
        "producers",
        "regions",
    ]
    for table in tables:
        raw_conn.execute(f"DROP TABLE IF EXISTS {table}")
