"""
Feature flags for the Vinho scan pipeline.

Uses pydantic-settings for typed, validated,
environment-variable-backed feature flags.

Toggle via env vars: FEATURE_GEOCODING=false
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class FeatureFlags(BaseSettings):
    """Feature flags backed by environment variables."""

    feature_enrichment: bool = True
    feature_geocoding: bool = True
    feature_auto_tasting: bool = True
    feature_process_on_submit: bool = True
    feature_low_confidence_escalation: bool = False

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
    }


@lru_cache()
def get_feature_flags() -> FeatureFlags:
    """Cached singleton. Use FastAPI Depends() for injection."""
    return FeatureFlags()
