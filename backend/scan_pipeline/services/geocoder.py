"""
Winery geocoding via LLM knowledge.

Returns a coordinate with an explicit confidence tier (exact, approximate,
region) rather than a fused score, so consumers can decide whether to
trust pin-level placement. Any failure yields None and the producer's
location is simply left unset.
"""

import logging
from typing import Optional

from ..config import Config
from ..errors import GeocodingError
from ..models.enums import GeoConfidence
from ..models.labels import GeocodeResult, clean_str
from .llm_client import complete_json
from .prompts import GEOCODING_SYSTEM, build_geocoding_prompt

logger = logging.getLogger(__name__)

STAGE = "geocode"


def parse_geocode(data: dict) -> Optional[GeocodeResult]:
    """
    Validate a geocoding reply.

    Returns None when coordinates are missing or out of range, or when the
    confidence tier is missing/unknown (the tier is never guessed).
    """
    try:
        latitude = float(data.get("latitude"))
        longitude = float(data.get("longitude"))
    except (TypeError, ValueError):
        return None

    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None
    # (0, 0) is the usual "I don't know" answer, not a winery
    if latitude == 0.0 and longitude == 0.0:
        return None

    tier = clean_str(data.get("confidence"))
    try:
        confidence = GeoConfidence(tier.lower()) if tier else None
    except ValueError:
        confidence = None
    if confidence is None:
        return None

    return GeocodeResult(
        latitude=round(latitude, 6),
        longitude=round(longitude, 6),
        confidence=confidence,
        location_note=clean_str(data.get("location_note")),
    )


class Geocoder:
    """Resolves a producer to coordinates with a confidence tier."""

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model or Config.geocoding_model()
        self.timeout = timeout if timeout is not None else Config.llm_timeout()

    async def _request(self, prompt: str) -> dict:
        messages = [
            {"role": "system", "content": GEOCODING_SYSTEM},
            {"role": "user", "content": prompt},
        ]
        try:
            return await complete_json(
                self.model,
                messages,
                temperature=Config.GEOCODING_TEMPERATURE,
                max_tokens=Config.GEOCODING_MAX_TOKENS,
                timeout=self.timeout,
            )
        except Exception as e:
            raise GeocodingError(f"Geocoding call failed: {e}", stage=STAGE) from e

    async def geocode(
        self,
        producer: str,
        address: Optional[str] = None,
        city: Optional[str] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[GeocodeResult]:
        """Geocode a producer. Returns None on any failure."""
        prompt = build_geocoding_prompt(producer, address, city, region, country)
        try:
            data = await self._request(prompt)
        except GeocodingError as e:
            logger.warning(f"Geocoding failed for '{producer}', leaving location unset: {e}")
            return None

        result = parse_geocode(data)
        if result is None:
            logger.info(f"Geocoder gave no usable coordinate for '{producer}'")
            return None

        logger.info(
            f"Geocoded '{producer}' at ({result.latitude}, {result.longitude}) "
            f"[{result.confidence.value}]"
        )
        return result
