"""
Prompt templates for the label extraction, enrichment and geocoding calls.

Known producer-to-varietal mappings are embedded as few-shot guidance in
the enrichment prompt rather than kept in a lookup table, so the model
can still reason about producers it has not been shown.
"""

from typing import Optional

from ..models.labels import ExtractedLabel


LABEL_EXTRACTION_SYSTEM = (
    "You are a master sommelier reading a wine label. Extract ONLY information "
    "that is visible on the label. Use null for anything you cannot read. "
    "Never invent, infer or assume values. Respond with a single JSON object."
)

LABEL_EXTRACTION_PROMPT = """Examine this wine label and extract its details.
{ocr_hint}
EXTRACTION PRIORITIES:
1. Producer/winery - usually the largest or most prominent text
2. Wine name/cuvée - the specific designation or proprietary name
3. Vintage - a 4-digit year (1900-2100), often near the wine name.
   If no year is visible return null. Do NOT assume non-vintage.
4. Grape varieties - look for grape names anywhere, including the back label:
   "100% Pinot Noir", "Merlot 20%", "Cépage: Syrah", "Made from ..."
   Return an empty array when no grape is named.
5. Region/appellation (e.g. "Napa Valley", "Pauillac", "Etna")
6. Alcohol - formats like "13.5% ALC/VOL", "14% vol", "ABV 12.5%"
7. Country - explicit, or stated by the appellation text
8. Producer address, city and postal code - usually on the back label
9. Producer website - "www.example.com" or "example.com"

Return a JSON object with exactly these fields:
{{
  "producer": "winery name (required)",
  "wine_name": "wine name or cuvée (required; use the producer's flagship name if that is the only name)",
  "year": 2019 or null,
  "country": "string or null",
  "region": "string or null",
  "varietals": ["grape", ...] (MUST be an array, empty if none visible),
  "abv_percent": 13.5 or null,
  "confidence": 0.0-1.0 based on label legibility (required),
  "producer_website": "string or null",
  "producer_address": "string or null",
  "producer_city": "string or null",
  "producer_postal_code": "string or null"
}}"""


ENRICHMENT_SYSTEM = (
    "You are a wine expert with deep knowledge of producers, regions and "
    "grape varieties. Respond with a single JSON object. The varietals and "
    "food_pairings fields must always be arrays of strings."
)

ENRICHMENT_PROMPT = """Wine details read from a label:
- Producer: {producer}
- Wine: {wine_name}
- Year: {year}
- Region: {region}
- Country: {country}
- Known varietals: {varietals}
- Website: {website}
- Address: {address}

Using your knowledge of this specific producer and wine:

1. GRAPE VARIETALS (most important): list the grapes this wine is actually
   made from. For blends list every grape, percentages are not needed.
   Reference examples:
   - Dom Pérignon: ["Pinot Noir", "Chardonnay"]
   - Opus One: ["Cabernet Sauvignon", "Merlot", "Cabernet Franc", "Petit Verdot", "Malbec"]
   - Sassicaia: ["Cabernet Sauvignon", "Cabernet Franc"]
   - Château d'Yquem: ["Sémillon", "Sauvignon Blanc"]
   - Barolo: ["Nebbiolo"]
   - Brunello di Montalcino: ["Sangiovese"]
   - Chablis: ["Chardonnay"]
   - Sancerre: ["Sauvignon Blanc"]
   - Champagne (traditional blend): ["Chardonnay", "Pinot Noir", "Pinot Meunier"]
2. The most likely vintage year, only if this is a vintage-dated wine and the year is unknown
3. Region/appellation and country if unknown
4. Producer website and winery address (street, city, postal code) if you know them
5. Descriptive metadata:
   - wine_type: one of "red", "white", "rose", "sparkling", "dessert", "fortified"
   - color: e.g. "deep ruby", "pale straw"
   - style: e.g. "full-bodied", "crisp and mineral"
   - food_pairings: 4-6 dishes
   - serving_temperature: e.g. "16-18°C"
   - tasting_notes: 50-100 words

Return JSON with these fields (null when you do not know):
{{
  "year": integer or null,
  "region": string or null,
  "country": string or null,
  "varietals": [string],
  "producer_website": string or null,
  "producer_address": string or null,
  "producer_city": string or null,
  "producer_postal_code": string or null,
  "wine_type": string or null,
  "color": string or null,
  "style": string or null,
  "food_pairings": [string],
  "serving_temperature": string or null,
  "tasting_notes": string or null
}}"""


GEOCODING_SYSTEM = (
    "You are a wine geography expert. Respond with a single JSON object "
    "containing precise coordinates and an explicit confidence tier."
)

GEOCODING_PROMPT = """Find the coordinates of this winery:
Producer: {producer}
{details}
RULES:
- Give the location of the winery building or its main vineyard, not the region centre
- If the producer has several sites, use the main winery or best-known vineyard
- confidence "exact": you know the winery/vineyard location itself
- confidence "approximate": you only know the village or town
- confidence "region": you only know the wine region (use its centre)

Examples:
- Chateau Margaux: 45.0422, -0.6761 (the château in Margaux)
- Dom Pérignon (Moët & Chandon): 49.0094, 3.9573 (Abbey of Hautvillers)
- Benanti, Pietra Marina vineyard: 37.6833, 15.0167 (south-east slope of Etna)

Return JSON:
{{
  "latitude": number or null,
  "longitude": number or null,
  "confidence": "exact" | "approximate" | "region",
  "location_note": "short description of the place"
}}"""


def build_extraction_prompt(ocr_text: Optional[str] = None) -> str:
    ocr_hint = ""
    if ocr_text and ocr_text.strip():
        ocr_hint = f'\nOCR text detected on the device (may contain errors): "{ocr_text.strip()[:2000]}"\n'
    return LABEL_EXTRACTION_PROMPT.format(ocr_hint=ocr_hint)


def build_enrichment_prompt(label: ExtractedLabel) -> str:
    return ENRICHMENT_PROMPT.format(
        producer=label.producer,
        wine_name=label.wine_name,
        year=label.year or "unknown",
        region=label.region or "unknown",
        country=label.country or "unknown",
        varietals=", ".join(label.varietals) if label.varietals else "none identified",
        website=label.producer_website or "unknown",
        address=label.producer_address or "unknown",
    )


def build_geocoding_prompt(
    producer: str,
    address: Optional[str] = None,
    city: Optional[str] = None,
    region: Optional[str] = None,
    country: Optional[str] = None,
) -> str:
    details = []
    if address:
        details.append(f"Address: {address}")
    if city:
        details.append(f"City: {city}")
    if region:
        details.append(f"Region: {region}")
    if country:
        details.append(f"Country: {country}")
    detail_text = "\n".join(details) + "\n" if details else ""
    return GEOCODING_PROMPT.format(producer=producer, details=detail_text)
