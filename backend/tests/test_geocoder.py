"""Tests for winery geocoding."""

from unittest.mock import AsyncMock, patch

import pytest

from scan_pipeline.models.enums import GeoConfidence
from scan_pipeline.services.geocoder import Geocoder, parse_geocode

PATCH_TARGET = "scan_pipeline.services.geocoder.complete_json"


class TestParseGeocode:
    def test_valid(self):
        result = parse_geocode({
            "latitude": 38.4306,
            "longitude": -122.4078,
            "confidence": "exact",
            "location_note": "Winery on Highway 29",
        })
        assert result.latitude == 38.4306
        assert result.longitude == -122.4078
        assert result.confidence == GeoConfidence.EXACT
        assert result.location_note == "Winery on Highway 29"

    def test_string_coordinates_and_uppercase_tier(self):
        result = parse_geocode({"latitude": "45.0", "longitude": "4.8", "confidence": "REGION"})
        assert result.confidence == GeoConfidence.REGION
        assert result.latitude == 45.0

    @pytest.mark.parametrize("data", [
        {"latitude": 95, "longitude": 10, "confidence": "exact"},
        {"latitude": 45, "longitude": 190, "confidence": "exact"},
        {"latitude": 0, "longitude": 0, "confidence": "region"},
        {"latitude": None, "longitude": 10, "confidence": "exact"},
        {"latitude": "north", "longitude": 10, "confidence": "exact"},
        {},
    ])
    def test_bad_coordinates(self, data):
        assert parse_geocode(data) is None

    @pytest.mark.parametrize("tier", [None, "", "precise", "high"])
    def test_missing_or_unknown_tier_is_not_guessed(self, tier):
        assert parse_geocode({"latitude": 38.4, "longitude": -122.4, "confidence": tier}) is None


class TestGeocoder:
    @pytest.mark.asyncio
    async def test_geocodes(self):
        reply = {"latitude": 38.43, "longitude": -122.41, "confidence": "approximate"}
        with patch(PATCH_TARGET, new=AsyncMock(return_value=reply)) as mock_call:
            result = await Geocoder(model="gpt-4o-mini", timeout=5).geocode(
                "Opus One Winery", city="Oakville", region="Napa Valley", country="USA"
            )

        assert result.confidence == GeoConfidence.APPROXIMATE
        prompt = mock_call.call_args.args[1][1]["content"]
        assert "Opus One Winery" in prompt
        assert "City: Oakville" in prompt

    @pytest.mark.asyncio
    async def test_failure_returns_none(self):
        with patch(PATCH_TARGET, new=AsyncMock(side_effect=RuntimeError("provider down"))):
            assert await Geocoder().geocode("Opus One Winery") is None

    @pytest.mark.asyncio
    async def test_unusable_reply_returns_none(self):
        with patch(PATCH_TARGET, new=AsyncMock(return_value={"latitude": 0, "longitude": 0})):
            assert await Geocoder().geocode("Unknown Cellars") is None
