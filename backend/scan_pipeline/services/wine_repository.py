"""
Wine graph repository: entity resolution and writes.

Resolves an enriched label into regions -> producers -> wines -> vintages,
links grape varietals, and updates the user's scan record.

Matching rules:
- Producer, region and varietal names match case-insensitively (name_key)
- Wine matches on producer + name
- Vintage matches on wine + year; a NULL year is the wine's single
  non-vintage bucket
- Varietals also absorb close spellings ("Semillon" / "Sémillon")

Dictionary rows are insert-if-absent. Unique constraints live in the
schema; an IntegrityError on insert means another job created the row
first, so the row is re-fetched instead of failing the job.
"""

import json
import logging
import sqlite3
import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from rapidfuzz import fuzz

from ..config import Config
from ..db import BaseRepository, format_timestamp
from ..errors import ResolutionError
from ..models.enums import GeoConfidence
from ..models.labels import (
    DESCRIPTIVE_FIELDS,
    EnrichedWine,
    GeocodeResult,
    WineRecord,
    is_non_vintage_name,
)

logger = logging.getLogger(__name__)

# Higher is more precise
_GEO_RANK = {
    GeoConfidence.REGION.value: 1,
    GeoConfidence.APPROXIMATE.value: 2,
    GeoConfidence.EXACT.value: 3,
}


def name_key(name: str) -> str:
    """Case-insensitive match key: NFC, casefolded, whitespace collapsed."""
    return " ".join(unicodedata.normalize("NFC", name).casefold().split())


def _fold_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


@dataclass
class ResolutionResult:
    """IDs of the rows a scan resolved to."""
    producer_id: int
    wine_id: int
    vintage_id: int
    region_id: Optional[int] = None
    varietal_ids: list[int] = field(default_factory=list)
    tasting_id: Optional[int] = None
    created: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class WineRepository(BaseRepository):
    """SQLite repository for the shared wine graph and user scan records."""

    # === Lookups ===

    def find_producer(self, name: str) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM producers WHERE name_key = ?", (name_key(name),)
        ).fetchone()
        return dict(row) if row else None

    def find_wine(self, producer: str, wine_name: str) -> Optional[WineRecord]:
        """Read-only lookup of a persisted wine by producer and wine name."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT w.* FROM wines w
            JOIN producers p ON p.id = w.producer_id
            WHERE p.name_key = ? AND w.name_key = ?
            """,
            (name_key(producer), name_key(wine_name)),
        ).fetchone()
        return WineRecord.from_row(row) if row else None

    def get_wine(self, wine_id: int) -> Optional[WineRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM wines WHERE id = ?", (wine_id,)).fetchone()
        return WineRecord.from_row(row) if row else None

    def get_vintage_varietals(self, vintage_id: int) -> list[tuple[str, Optional[float]]]:
        """(varietal name, percent) pairs linked to a vintage."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT g.name, wv.percent FROM wine_varietals wv
            JOIN grape_varietals g ON g.id = wv.varietal_id
            WHERE wv.vintage_id = ?
            ORDER BY g.name
            """,
            (vintage_id,),
        ).fetchall()
        return [(row["name"], row["percent"]) for row in rows]

    # === Scans ===

    def create_scan(
        self,
        user_id: str,
        image_path: str,
        scan_image_url: Optional[str] = None,
        ocr_text: Optional[str] = None,
    ) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO scans (user_id, image_path, scan_image_url, ocr_text, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, image_path, scan_image_url, ocr_text, format_timestamp()),
            )
            return cursor.lastrowid

    def get_scan(self, scan_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM scans WHERE id = ?", (scan_id,)).fetchone()
        return dict(row) if row else None

    def delete_scan(self, scan_id: int) -> None:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM scans WHERE id = ?", (scan_id,))

    def link_scan(self, scan_id: int, vintage_id: int, confidence: Optional[float] = None) -> None:
        """Point a scan at the vintage it resolved to."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE scans SET matched_vintage_id = ?, confidence = ? WHERE id = ?",
                (vintage_id, confidence, scan_id),
            )

    # === Resolution ===

    def _insert_or_fetch(
        self,
        entity: str,
        find: Callable[[], Optional[int]],
        insert: Callable[[], int],
    ) -> tuple[int, bool]:
        """Return (id, created). A unique-constraint race re-reads the winner's row."""
        existing = find()
        if existing is not None:
            return existing, False
        try:
            return insert(), True
        except sqlite3.IntegrityError:
            existing = find()
            if existing is None:
                raise
            logger.debug(f"{entity} created concurrently, using existing row {existing}")
            return existing, False

    def _upsert_region(self, cursor: sqlite3.Cursor, region: str, country: Optional[str]) -> int:
        key = name_key(region)
        country_key = name_key(country) if country else ""

        def find() -> Optional[int]:
            row = cursor.execute(
                "SELECT id FROM regions WHERE name_key = ? AND country_key = ?",
                (key, country_key),
            ).fetchone()
            return row["id"] if row else None

        def insert() -> int:
            cursor.execute(
                "INSERT INTO regions (name, name_key, country, country_key) VALUES (?, ?, ?, ?)",
                (region, key, country, country_key),
            )
            return cursor.lastrowid

        region_id, _ = self._insert_or_fetch("Region", find, insert)
        return region_id

    def _upsert_producer(
        self,
        cursor: sqlite3.Cursor,
        wine: EnrichedWine,
        region_id: Optional[int],
        geocode: Optional[GeocodeResult],
    ) -> tuple[int, bool]:
        key = name_key(wine.producer)

        def find() -> Optional[int]:
            row = cursor.execute("SELECT id FROM producers WHERE name_key = ?", (key,)).fetchone()
            return row["id"] if row else None

        def insert() -> int:
            cursor.execute(
                "INSERT INTO producers (name, name_key, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (wine.producer, key, format_timestamp(), format_timestamp()),
            )
            return cursor.lastrowid

        producer_id, created = self._insert_or_fetch("Producer", find, insert)

        # Contact details fill gaps only
        cursor.execute(
            """
            UPDATE producers SET
                region_id = COALESCE(region_id, ?),
                website = COALESCE(NULLIF(website, ''), ?),
                address = COALESCE(NULLIF(address, ''), ?),
                city = COALESCE(NULLIF(city, ''), ?),
                postal_code = COALESCE(NULLIF(postal_code, ''), ?),
                updated_at = ?
            WHERE id = ?
            """,
            (
                region_id,
                wine.producer_website,
                wine.producer_address,
                wine.producer_city,
                wine.producer_postal_code,
                format_timestamp(),
                producer_id,
            ),
        )

        if geocode is not None:
            self._apply_location(cursor, producer_id, geocode)

        return producer_id, created

    def _apply_location(self, cursor: sqlite3.Cursor, producer_id: int, geocode: GeocodeResult) -> None:
        """Set the location if unset, or if the new tier is more precise."""
        row = cursor.execute(
            "SELECT latitude, location_confidence FROM producers WHERE id = ?",
            (producer_id,),
        ).fetchone()
        current_rank = _GEO_RANK.get(row["location_confidence"], 0) if row["latitude"] is not None else 0
        if _GEO_RANK[geocode.confidence.value] <= current_rank:
            return
        cursor.execute(
            """
            UPDATE producers
            SET latitude = ?, longitude = ?, location_confidence = ?, location_note = ?
            WHERE id = ?
            """,
            (
                geocode.latitude,
                geocode.longitude,
                geocode.confidence.value,
                geocode.location_note,
                producer_id,
            ),
        )

    def _upsert_wine(self, cursor: sqlite3.Cursor, producer_id: int, wine: EnrichedWine) -> tuple[int, bool]:
        key = name_key(wine.wine_name)

        def find() -> Optional[int]:
            row = cursor.execute(
                "SELECT id FROM wines WHERE producer_id = ? AND name_key = ?",
                (producer_id, key),
            ).fetchone()
            return row["id"] if row else None

        def insert() -> int:
            cursor.execute(
                """
                INSERT INTO wines (name, name_key, producer_id, is_nv, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    wine.wine_name,
                    key,
                    producer_id,
                    int(is_non_vintage_name(wine.wine_name)),
                    format_timestamp(),
                    format_timestamp(),
                ),
            )
            return cursor.lastrowid

        wine_id, created = self._insert_or_fetch("Wine", find, insert)
        self._fill_description(cursor, wine_id, wine)
        return wine_id, created

    def _fill_description(self, cursor: sqlite3.Cursor, wine_id: int, wine: EnrichedWine) -> None:
        """Descriptive fields are fill-only against the stored row."""
        cursor.execute(
            """
            UPDATE wines SET
                wine_type = COALESCE(NULLIF(wine_type, ''), ?),
                color = COALESCE(NULLIF(color, ''), ?),
                style = COALESCE(NULLIF(style, ''), ?),
                food_pairings = CASE
                    WHEN food_pairings IS NULL OR food_pairings IN ('', '[]') THEN ?
                    ELSE food_pairings
                END,
                serving_temperature = COALESCE(NULLIF(serving_temperature, ''), ?),
                tasting_notes = COALESCE(NULLIF(tasting_notes, ''), ?),
                updated_at = ?
            WHERE id = ?
            """,
            (
                wine.wine_type,
                wine.color,
                wine.style,
                json.dumps(wine.food_pairings, ensure_ascii=False) if wine.food_pairings else None,
                wine.serving_temperature,
                wine.tasting_notes,
                format_timestamp(),
                wine_id,
            ),
        )

    def _upsert_vintage(
        self,
        cursor: sqlite3.Cursor,
        wine_id: int,
        year: Optional[int],
        abv: Optional[float],
    ) -> tuple[int, bool]:

        def find() -> Optional[int]:
            if year is None:
                row = cursor.execute(
                    "SELECT id FROM vintages WHERE wine_id = ? AND year IS NULL", (wine_id,)
                ).fetchone()
            else:
                row = cursor.execute(
                    "SELECT id FROM vintages WHERE wine_id = ? AND year = ?", (wine_id, year)
                ).fetchone()
            return row["id"] if row else None

        def insert() -> int:
            cursor.execute(
                "INSERT INTO vintages (wine_id, year, abv) VALUES (?, ?, ?)",
                (wine_id, year, abv),
            )
            return cursor.lastrowid

        vintage_id, created = self._insert_or_fetch("Vintage", find, insert)
        if abv is not None and not created:
            cursor.execute("UPDATE vintages SET abv = COALESCE(abv, ?) WHERE id = ?", (abv, vintage_id))
        return vintage_id, created

    def _match_varietal(self, cursor: sqlite3.Cursor, name: str) -> Optional[int]:
        row = cursor.execute(
            "SELECT id FROM grape_varietals WHERE name_key = ?", (name_key(name),)
        ).fetchone()
        if row:
            return row["id"]

        # Close spellings of an existing varietal
        folded = _fold_accents(name)
        best_id, best_score = None, 0.0
        for candidate in cursor.execute("SELECT id, name FROM grape_varietals").fetchall():
            score = fuzz.ratio(folded, _fold_accents(candidate["name"]))
            if score > best_score:
                best_id, best_score = candidate["id"], score
        if best_id is not None and best_score >= Config.VARIETAL_FUZZY_THRESHOLD:
            logger.debug(f"Varietal '{name}' matched existing id {best_id} (score {best_score:.0f})")
            return best_id
        return None

    def _upsert_varietal(self, cursor: sqlite3.Cursor, name: str) -> int:
        def insert() -> int:
            cursor.execute(
                "INSERT INTO grape_varietals (name, name_key) VALUES (?, ?)",
                (name, name_key(name)),
            )
            return cursor.lastrowid

        varietal_id, _ = self._insert_or_fetch(
            "GrapeVarietal",
            lambda: self._match_varietal(cursor, name),
            insert,
        )
        return varietal_id

    def _linked_varietal_ids(self, cursor: sqlite3.Cursor, vintage_id: int) -> list[int]:
        rows = cursor.execute(
            "SELECT varietal_id FROM wine_varietals WHERE vintage_id = ? ORDER BY varietal_id",
            (vintage_id,),
        ).fetchall()
        return [row["varietal_id"] for row in rows]

    def _link_varietals(
        self,
        cursor: sqlite3.Cursor,
        vintage_id: int,
        varietals: list[str],
        from_label: bool = True,
    ) -> list[int]:
        """
        Link varietals to a vintage with an equal percentage split.

        Varietals read off a label replace the vintage's links. Model-supplied
        varietals only fill a vintage with no links; otherwise the existing
        ids are returned untouched.
        """
        if not varietals:
            # Keep whatever an earlier scan linked
            return []

        if not from_label:
            existing = self._linked_varietal_ids(cursor, vintage_id)
            if existing:
                return existing

        ids: list[int] = []
        for name in varietals:
            varietal_id = self._upsert_varietal(cursor, name)
            if varietal_id not in ids:
                ids.append(varietal_id)

        percent = round(100 / len(ids), 2)
        cursor.execute("DELETE FROM wine_varietals WHERE vintage_id = ?", (vintage_id,))
        cursor.executemany(
            "INSERT INTO wine_varietals (vintage_id, varietal_id, percent) VALUES (?, ?, ?)",
            [(vintage_id, varietal_id, percent) for varietal_id in ids],
        )
        return ids

    def resolve(
        self,
        wine: EnrichedWine,
        geocode: Optional[GeocodeResult] = None,
        scan_id: Optional[int] = None,
    ) -> ResolutionResult:
        """
        Resolve or create the full wine graph for one scan, in one transaction.

        Args:
            wine: Enriched label data
            geocode: Optional producer coordinate
            scan_id: Scan row to link to the resolved vintage

        Returns:
            ResolutionResult with the resolved row ids

        Raises:
            ResolutionError: unrecoverable database error (nothing is written)
        """
        try:
            with self._transaction() as cursor:
                region_id = None
                if wine.region:
                    region_id = self._upsert_region(cursor, wine.region, wine.country)

                producer_id, producer_created = self._upsert_producer(cursor, wine, region_id, geocode)
                wine_id, wine_created = self._upsert_wine(cursor, producer_id, wine)
                vintage_id, vintage_created = self._upsert_vintage(
                    cursor, wine_id, wine.year, wine.abv_percent
                )
                varietal_ids = self._link_varietals(
                    cursor, vintage_id, wine.varietals, from_label=wine.varietals_from_label
                )

                if scan_id is not None:
                    cursor.execute(
                        "UPDATE scans SET matched_vintage_id = ?, confidence = ? WHERE id = ?",
                        (vintage_id, wine.confidence, scan_id),
                    )
        except sqlite3.Error as e:
            raise ResolutionError(f"Failed to save wine: {e}", stage="resolve") from e

        logger.info(
            f"Resolved '{wine.producer} {wine.wine_name}' {wine.year or 'NV'}: "
            f"producer={producer_id}{'*' if producer_created else ''}, "
            f"wine={wine_id}{'*' if wine_created else ''}, "
            f"vintage={vintage_id}{'*' if vintage_created else ''}, "
            f"varietals={len(varietal_ids)}"
        )
        return ResolutionResult(
            producer_id=producer_id,
            wine_id=wine_id,
            vintage_id=vintage_id,
            region_id=region_id,
            varietal_ids=varietal_ids,
            created={
                "producer": producer_created,
                "wine": wine_created,
                "vintage": vintage_created,
            },
        )

    def create_tasting(self, user_id: str, vintage_id: int, scan_id: Optional[int] = None) -> Optional[int]:
        """
        Add the scanned wine to the user's journal. Failure is logged, not raised.

        Re-processing the same scan returns the existing tasting.
        """
        try:
            with self._transaction() as cursor:
                if scan_id is not None:
                    row = cursor.execute(
                        "SELECT id FROM tastings WHERE scan_id = ?", (scan_id,)
                    ).fetchone()
                    if row:
                        return row["id"]
                cursor.execute(
                    "INSERT INTO tastings (user_id, vintage_id, scan_id, tasted_at) VALUES (?, ?, ?, ?)",
                    (user_id, vintage_id, scan_id, format_timestamp()),
                )
                return cursor.lastrowid
        except sqlite3.Error as e:
            logger.warning(f"Could not create tasting for user {user_id}, vintage {vintage_id}: {e}")
            return None

    # === Enrichment backfill ===

    def find_tasted_vintages(self, user_id: str, limit: int = 100) -> list[dict]:
        """
        Vintages in a user's journal with the wine context enrichment needs.

        Each dict has vintage_id, wine_id, producer_name, wine_name, year,
        region, country, varietals (linked names) and needs_enrichment, which
        is True when a descriptive field is empty or no varietal is linked.
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT v.id AS vintage_id, v.year, w.*, p.name AS producer_name,
                   r.name AS region_name, r.country AS region_country,
                   MAX(t.tasted_at) AS last_tasted
            FROM tastings t
            JOIN vintages v ON v.id = t.vintage_id
            JOIN wines w ON w.id = v.wine_id
            JOIN producers p ON p.id = w.producer_id
            LEFT JOIN regions r ON r.id = p.region_id
            WHERE t.user_id = ?
            GROUP BY v.id
            ORDER BY last_tasted DESC, v.id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()

        result = []
        for row in rows:
            wine = WineRecord.from_row(row)
            varietals = [name for name, _ in self.get_vintage_varietals(row["vintage_id"])]
            result.append({
                "vintage_id": row["vintage_id"],
                "wine_id": wine.id,
                "producer_name": row["producer_name"],
                "wine_name": wine.name,
                "year": row["year"],
                "region": row["region_name"],
                "country": row["region_country"],
                "varietals": varietals,
                "needs_enrichment": not wine.is_described() or not varietals,
            })
        return result

    def apply_enrichment(self, wine_id: int, vintage_id: int, wine: EnrichedWine) -> list[str]:
        """
        Fill a stored wine's empty descriptive fields, and an unlinked
        vintage's varietals, from an enrichment result. Nothing is overwritten.

        Returns:
            Names of the fields that were filled ("varietals" included)

        Raises:
            ResolutionError: wine missing, or a database error
        """
        try:
            with self._transaction() as cursor:
                before = cursor.execute("SELECT * FROM wines WHERE id = ?", (wine_id,)).fetchone()
                if before is None:
                    raise ResolutionError(f"Wine not found: {wine_id}", stage="enrich")
                had_varietals = bool(self._linked_varietal_ids(cursor, vintage_id))

                self._fill_description(cursor, wine_id, wine)
                self._link_varietals(cursor, vintage_id, wine.varietals, from_label=False)

                after = cursor.execute("SELECT * FROM wines WHERE id = ?", (wine_id,)).fetchone()
        except sqlite3.Error as e:
            raise ResolutionError(f"Failed to save enrichment: {e}", stage="enrich") from e

        filled = [name for name in DESCRIPTIVE_FIELDS if before[name] != after[name]]
        if wine.varietals and not had_varietals:
            filled.append("varietals")
        return filled

    # === Admin cleanup ===

    def delete_user_data(self, user_id: str) -> dict[str, int]:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM tastings WHERE user_id = ?", (user_id,))
            tastings = cursor.rowcount
            cursor.execute("DELETE FROM scans WHERE user_id = ?", (user_id,))
            scans = cursor.rowcount
        return {"tastings_deleted": tastings, "scans_deleted": scans}

    def delete_all_data(self) -> dict[str, int]:
        """Delete every scan, tasting and the shared wine graph (varietal dictionary kept)."""
        stats = {}
        with self._transaction() as cursor:
            for table, key in (
                ("tastings", "tastings_deleted"),
                ("scans", "scans_deleted"),
                ("wine_varietals", "wine_varietals_deleted"),
                ("vintages", "vintages_deleted"),
                ("wines", "wines_deleted"),
                ("producers", "producers_deleted"),
            ):
                cursor.execute(f"DELETE FROM {table}")
                stats[key] = cursor.rowcount
        return stats
