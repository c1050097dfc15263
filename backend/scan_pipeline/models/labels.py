"""
Pipeline data types: queue rows and the transient label/enrichment records
passed between stages.

Coercion helpers normalize loosely-typed LLM output into these types.
Fields the model could not read stay None; varietals are always a list.
"""

import json
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from ..config import Config
from .enums import GeoConfidence, JobStatus

_YEAR_PATTERN = re.compile(r"\b(19\d{2}|20\d{2})\b")
_NV_PATTERN = re.compile(r"\b(nv|non[- ]?vintage|multi[- ]?vintage|solera|perpetual)\b|\bn\.v\.", re.IGNORECASE)
_ABV_PATTERN = re.compile(r"(\d{1,2}(?:[.,]\d{1,2})?)")


def clean_str(value: Any) -> Optional[str]:
    """Strip a string value; empty or placeholder values become None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    if not value or value.lower() in ("null", "none", "n/a", "unknown"):
        return None
    return value


def coerce_year(value: Any) -> Optional[int]:
    """Coerce a vintage to an int within 1900..next year, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = _YEAR_PATTERN.search(value)
        if not match:
            return None
        value = int(match.group(1))
    try:
        year = int(value)
    except (TypeError, ValueError):
        return None
    if year < Config.MIN_VINTAGE_YEAR or year > datetime.now().year + 1:
        return None
    return year


def coerce_varietals(value: Any) -> list[str]:
    """Coerce varietals to a de-duplicated list of names. Never returns None."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[,;/]", value)
    elif isinstance(value, (list, tuple)):
        items = []
        for item in value:
            # Models sometimes return [{"name": "Merlot", "percent": 20}]
            if isinstance(item, dict):
                item = item.get("name")
            items.append(item)
    else:
        return []

    result = []
    seen = set()
    for item in items:
        name = clean_str(item)
        if name and name.lower() not in seen:
            seen.add(name.lower())
            result.append(name)
    return result


def coerce_abv(value: Any) -> Optional[float]:
    """Parse ABV from 13.5, "13.5%" or "13,5 % vol"; out-of-range values become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = _ABV_PATTERN.search(value)
        if not match:
            return None
        value = match.group(1).replace(",", ".")
    try:
        abv = float(value)
    except (TypeError, ValueError):
        return None
    if abv <= 0 or abv > 25:
        return None
    return round(abv, 2)


def coerce_confidence(value: Any) -> float:
    """Clamp a model-reported confidence into 0..1 (missing means 0)."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))


def coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return []
    return [s for s in (clean_str(v) for v in value) if s]


@dataclass
class ScanJob:
    """A queue row in wines_added."""
    id: int
    user_id: str
    image_url: str
    status: JobStatus
    ocr_text: Optional[str] = None
    idempotency_key: Optional[str] = None
    scan_id: Optional[int] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    processed_data: Optional[dict] = None
    created_at: Optional[str] = None
    claimed_at: Optional[str] = None
    processed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "ScanJob":
        processed = row["processed_data"]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            image_url=row["image_url"],
            status=JobStatus(row["status"]),
            ocr_text=row["ocr_text"],
            idempotency_key=row["idempotency_key"],
            scan_id=row["scan_id"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            processed_data=json.loads(processed) if processed else None,
            created_at=row["created_at"],
            claimed_at=row["claimed_at"],
            processed_at=row["processed_at"],
        )


@dataclass
class EnrichmentJob:
    """A queue row in wines_enrichment_queue."""
    id: int
    vintage_id: int
    wine_id: int
    user_id: str
    producer_name: str
    wine_name: str
    status: JobStatus
    year: Optional[int] = None
    region: Optional[str] = None
    country: Optional[str] = None
    existing_varietals: list[str] = field(default_factory=list)
    priority: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    enrichment_data: Optional[dict] = None
    created_at: Optional[str] = None
    claimed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "EnrichmentJob":
        varietals = row["existing_varietals"]
        data = row["enrichment_data"]
        return cls(
            id=row["id"],
            vintage_id=row["vintage_id"],
            wine_id=row["wine_id"],
            user_id=row["user_id"],
            producer_name=row["producer_name"],
            wine_name=row["wine_name"],
            status=JobStatus(row["status"]),
            year=row["year"],
            region=row["region"],
            country=row["country"],
            existing_varietals=json.loads(varietals) if varietals else [],
            priority=row["priority"],
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            enrichment_data=json.loads(data) if data else None,
            created_at=row["created_at"],
            claimed_at=row["claimed_at"],
        )


@dataclass
class ExtractedLabel:
    """Fields read off a wine label. Absent fields are None, never guessed."""
    producer: str
    wine_name: str
    confidence: float
    year: Optional[int] = None
    region: Optional[str] = None
    country: Optional[str] = None
    varietals: list[str] = field(default_factory=list)
    abv_percent: Optional[float] = None
    producer_website: Optional[str] = None
    producer_address: Optional[str] = None
    producer_city: Optional[str] = None
    producer_postal_code: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# Fields the enrichment call may fill when they are empty
ENRICHABLE_LABEL_FIELDS = (
    "year",
    "region",
    "country",
    "varietals",
    "producer_website",
    "producer_address",
    "producer_city",
    "producer_postal_code",
)
DESCRIPTIVE_FIELDS = (
    "wine_type",
    "color",
    "style",
    "food_pairings",
    "serving_temperature",
    "tasting_notes",
)


@dataclass
class EnrichedWine(ExtractedLabel):
    """
    ExtractedLabel plus gap-filled fields and descriptive metadata.

    varietals_from_label is False when the grapes were supplied by the
    enrichment model rather than read off the label; such varietals may
    only fill a vintage that has none linked yet.
    """
    wine_type: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    food_pairings: list[str] = field(default_factory=list)
    serving_temperature: Optional[str] = None
    tasting_notes: Optional[str] = None
    varietals_from_label: bool = True

    @classmethod
    def from_label(cls, label: ExtractedLabel) -> "EnrichedWine":
        """Wrap an extracted label with no enrichment applied."""
        if isinstance(label, EnrichedWine):
            return label
        return cls(**{f.name: getattr(label, f.name) for f in fields(ExtractedLabel)})

    def missing_fields(self) -> list[str]:
        """Names of enrichable fields that are still null or empty."""
        return [
            name for name in ENRICHABLE_LABEL_FIELDS + DESCRIPTIVE_FIELDS
            if is_empty(getattr(self, name))
        ]


@dataclass
class GeocodeResult:
    """Producer coordinate with an explicit confidence tier."""
    latitude: float
    longitude: float
    confidence: GeoConfidence
    location_note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "confidence": self.confidence.value,
            "location_note": self.location_note,
        }


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty lists."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def is_non_vintage_name(name: Optional[str]) -> bool:
    """True if a wine name marks it as non-vintage (NV, solera, multi-vintage...)."""
    return bool(name and _NV_PATTERN.search(name))


@dataclass
class WineRecord:
    """A persisted wine row, used as context for enrichment."""
    id: int
    producer_id: int
    name: str
    is_nv: bool = False
    wine_type: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    food_pairings: list[str] = field(default_factory=list)
    serving_temperature: Optional[str] = None
    tasting_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "WineRecord":
        pairings = row["food_pairings"]
        return cls(
            id=row["id"],
            producer_id=row["producer_id"],
            name=row["name"],
            is_nv=bool(row["is_nv"]),
            wine_type=row["wine_type"],
            color=row["color"],
            style=row["style"],
            food_pairings=json.loads(pairings) if pairings else [],
            serving_temperature=row["serving_temperature"],
            tasting_notes=row["tasting_notes"],
        )

    def is_described(self) -> bool:
        return not any(is_empty(getattr(self, name)) for name in DESCRIPTIVE_FIELDS)
