"""
Enrichment: a second LLM call that fills gaps in an extracted label and
adds descriptive metadata (type, style, pairings, tasting notes).

Merge policy is fill-only. Values read off the label, and values already
stored on the persisted wine, always win over the model's answer.

Failures here never fail the job: enrich() logs and returns the label
unchanged (wrapped as an EnrichedWine).
"""

import logging
from typing import Any, Optional

from ..config import Config
from ..errors import EnrichmentError
from ..models.labels import (
    DESCRIPTIVE_FIELDS,
    EnrichedWine,
    ExtractedLabel,
    WineRecord,
    clean_str,
    coerce_str_list,
    coerce_varietals,
    coerce_year,
    is_empty,
    is_non_vintage_name,
)
from .llm_client import complete_json
from .prompts import ENRICHMENT_SYSTEM, build_enrichment_prompt

logger = logging.getLogger(__name__)

STAGE = "enrich"

_STRING_FIELDS = (
    "region",
    "country",
    "producer_website",
    "producer_address",
    "producer_city",
    "producer_postal_code",
    "wine_type",
    "color",
    "style",
    "serving_temperature",
    "tasting_notes",
)


def _normalize_model_values(data: dict) -> dict[str, Any]:
    """Coerce the enrichment reply into typed field values."""
    values: dict[str, Any] = {name: clean_str(data.get(name)) for name in _STRING_FIELDS}
    values["year"] = coerce_year(data.get("year"))
    values["varietals"] = coerce_varietals(data.get("varietals"))
    values["food_pairings"] = coerce_str_list(data.get("food_pairings"))
    if values["wine_type"]:
        values["wine_type"] = values["wine_type"].lower()
    return values


def apply_existing_wine(enriched: EnrichedWine, existing: Optional[WineRecord]) -> EnrichedWine:
    """Copy known descriptive values from the persisted wine onto empty fields."""
    if existing is None:
        return enriched
    for name in DESCRIPTIVE_FIELDS:
        if is_empty(getattr(enriched, name)) and not is_empty(getattr(existing, name)):
            value = getattr(existing, name)
            setattr(enriched, name, list(value) if isinstance(value, list) else value)
    return enriched


def merge_enrichment(
    label: ExtractedLabel,
    data: dict,
    existing: Optional[WineRecord] = None,
) -> EnrichedWine:
    """
    Merge a model reply into the label, filling only empty fields.

    Args:
        label: Extracted label (its values are never replaced)
        data: Parsed enrichment JSON
        existing: Persisted wine row, whose descriptive values take priority
                  over the model's

    Returns:
        New EnrichedWine; varietals and food_pairings are always lists
    """
    enriched = EnrichedWine.from_label(label)
    enriched.varietals = list(enriched.varietals)
    enriched = apply_existing_wine(enriched, existing)

    values = _normalize_model_values(data)

    # A non-vintage wine has no year to fill
    if is_non_vintage_name(label.wine_name) or (existing is not None and existing.is_nv):
        values["year"] = None

    for name, value in values.items():
        if is_empty(value):
            continue
        if is_empty(getattr(enriched, name)):
            setattr(enriched, name, value)

    if not label.varietals and enriched.varietals:
        enriched.varietals_from_label = False

    return enriched


def needs_enrichment(
    label: ExtractedLabel,
    existing: Optional[WineRecord] = None,
    producer: Optional[dict] = None,
) -> bool:
    """
    False only when nothing is left to fill: the label has year, varietals,
    region and country, the producer has a website and an address or
    coordinates (read off the label or already stored), and the stored wine
    is fully described.
    """
    stored = producer or {}
    label_complete = (
        label.year is not None
        and bool(label.varietals)
        and bool(label.region)
        and bool(label.country)
    )
    has_website = bool(label.producer_website or stored.get("website"))
    has_location = bool(
        label.producer_address or stored.get("address") or stored.get("latitude") is not None
    )
    described = existing is not None and existing.is_described()
    return not (label_complete and has_website and has_location and described)


class EnrichmentEngine:
    """Fills gaps in extracted label data using a second LLM call."""

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model or Config.enrichment_model()
        self.timeout = timeout if timeout is not None else Config.llm_timeout()

    async def _request(self, label: ExtractedLabel) -> dict:
        messages = [
            {"role": "system", "content": ENRICHMENT_SYSTEM},
            {"role": "user", "content": build_enrichment_prompt(label)},
        ]
        try:
            return await complete_json(
                self.model,
                messages,
                temperature=Config.ENRICHMENT_TEMPERATURE,
                max_tokens=Config.ENRICHMENT_MAX_TOKENS,
                timeout=self.timeout,
            )
        except ValueError as e:
            raise EnrichmentError(f"Enrichment returned invalid JSON: {e}", stage=STAGE) from e
        except Exception as e:
            raise EnrichmentError(f"Enrichment call failed: {e}", stage=STAGE) from e

    async def enrich(
        self,
        label: ExtractedLabel,
        existing_wine: Optional[WineRecord] = None,
        producer: Optional[dict] = None,
    ) -> EnrichedWine:
        """
        Enrich a label. Never raises for model/transport failures.

        Args:
            label: Extracted label
            existing_wine: Persisted wine with the same producer and name
            producer: Persisted producer row (website, address, latitude)

        Returns:
            EnrichedWine; on failure, the label unchanged plus any values
            already stored on existing_wine
        """
        if not needs_enrichment(label, existing_wine, producer):
            logger.debug(f"Skipping enrichment for '{label.producer} {label.wine_name}': nothing missing")
            return apply_existing_wine(EnrichedWine.from_label(label), existing_wine)

        try:
            data = await self._request(label)
        except EnrichmentError as e:
            logger.warning(f"Enrichment failed for '{label.producer} {label.wine_name}', continuing without it: {e}")
            return apply_existing_wine(EnrichedWine.from_label(label), existing_wine)

        enriched = merge_enrichment(label, data, existing_wine)
        missing = enriched.missing_fields()
        logger.info(
            f"Enriched '{label.producer} {label.wine_name}': "
            f"{len(enriched.varietals)} varietal(s), still missing {missing or 'nothing'}"
        )
        return enriched

    async def enrich_strict(
        self,
        label: ExtractedLabel,
        existing_wine: Optional[WineRecord] = None,
    ) -> EnrichedWine:
        """
        Always call the model and merge its reply. Used by the backfill
        worker, which counts failures against a retry cap.

        Raises:
            EnrichmentError: model or transport failure
        """
        data = await self._request(label)
        return merge_enrichment(label, data, existing_wine)
