"""
Label extraction: one vision LLM call that reads a wine label.

Any failure here is fatal for the job. A reply that is not JSON, or that
lacks producer/wine_name, raises ExtractionError; there are no silent
defaults.
"""

import logging
from typing import Optional

from ..config import Config
from ..errors import ExtractionError, UnsafeImageUrlError
from ..feature_flags import FeatureFlags, get_feature_flags
from ..models.labels import (
    ExtractedLabel,
    clean_str,
    coerce_abv,
    coerce_confidence,
    coerce_varietals,
    coerce_year,
)
from ..security import is_valid_image_url
from .llm_client import complete_json, image_message
from .prompts import LABEL_EXTRACTION_SYSTEM, build_extraction_prompt

logger = logging.getLogger(__name__)

STAGE = "extract"


def parse_label(data: dict) -> ExtractedLabel:
    """
    Build an ExtractedLabel from the model's JSON object.

    Raises:
        ExtractionError: if producer or wine_name is missing
    """
    producer = clean_str(data.get("producer"))
    wine_name = clean_str(data.get("wine_name"))
    if not producer or not wine_name:
        missing = [name for name, value in (("producer", producer), ("wine_name", wine_name)) if not value]
        raise ExtractionError(
            f"Label extraction missing required field(s): {', '.join(missing)}",
            stage=STAGE,
            details={"missing": missing},
        )

    return ExtractedLabel(
        producer=producer,
        wine_name=wine_name,
        confidence=coerce_confidence(data.get("confidence")),
        year=coerce_year(data.get("year")),
        region=clean_str(data.get("region")),
        country=clean_str(data.get("country")),
        varietals=coerce_varietals(data.get("varietals")),
        abv_percent=coerce_abv(data.get("abv_percent")),
        producer_website=clean_str(data.get("producer_website")),
        producer_address=clean_str(data.get("producer_address")),
        producer_city=clean_str(data.get("producer_city")),
        producer_postal_code=clean_str(data.get("producer_postal_code")),
    )


class LabelExtractor:
    """Reads structured wine data off a label image."""

    def __init__(
        self,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        timeout: Optional[float] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        self.model = model or Config.extraction_model()
        self.fallback_model = fallback_model or Config.extraction_fallback_model()
        self.timeout = timeout if timeout is not None else Config.llm_timeout()
        self.flags = flags or get_feature_flags()

    async def _call_model(self, model: str, image_url: str, ocr_text: Optional[str]) -> ExtractedLabel:
        messages = [
            {"role": "system", "content": LABEL_EXTRACTION_SYSTEM},
            image_message(build_extraction_prompt(ocr_text), image_url),
        ]
        try:
            data = await complete_json(
                model,
                messages,
                temperature=Config.EXTRACTION_TEMPERATURE,
                max_tokens=Config.EXTRACTION_MAX_TOKENS,
                timeout=self.timeout,
            )
        except ValueError as e:
            raise ExtractionError(f"Label extraction returned invalid JSON: {e}", stage=STAGE) from e
        except Exception as e:
            raise ExtractionError(f"Label extraction call failed: {e}", stage=STAGE) from e
        return parse_label(data)

    async def extract(self, image_url: str, ocr_text: Optional[str] = None) -> ExtractedLabel:
        """
        Extract label fields from an image.

        Args:
            image_url: Public image URL (must pass the outbound URL policy)
            ocr_text: Optional on-device OCR hint

        Returns:
            ExtractedLabel with unreadable fields set to None

        Raises:
            UnsafeImageUrlError: URL rejected before any network call
            ExtractionError: call failed, invalid JSON, or required fields missing
        """
        if not is_valid_image_url(image_url):
            raise UnsafeImageUrlError("Image URL is not allowed", stage=STAGE)

        label = await self._call_model(self.model, image_url, ocr_text)
        logger.info(
            f"Extracted label: producer='{label.producer}', wine='{label.wine_name}', "
            f"year={label.year}, confidence={label.confidence:.2f}"
        )

        if (
            self.flags.feature_low_confidence_escalation
            and label.confidence < Config.LOW_CONFIDENCE_THRESHOLD
            and self.fallback_model != self.model
        ):
            logger.info(f"Low extraction confidence ({label.confidence:.2f}), retrying with {self.fallback_model}")
            try:
                retried = await self._call_model(self.fallback_model, image_url, ocr_text)
            except ExtractionError as e:
                logger.warning(f"Fallback extraction failed, keeping first result: {e}")
            else:
                if retried.confidence > label.confidence:
                    label = retried

        return label
