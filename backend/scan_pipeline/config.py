"""
Centralized configuration for the Vinho scan pipeline.

All constants are defined here to avoid scattered magic numbers
and enable easy configuration management.
"""

import os
from pathlib import Path
from typing import List, Optional


class Config:
    """Application configuration constants."""

    # === Label Extraction ===
    EXTRACTION_TEMPERATURE = 0.2
    EXTRACTION_MAX_TOKENS = 500
    LOW_CONFIDENCE_THRESHOLD = 0.6  # Escalate to the fallback model below this

    # === Enrichment ===
    ENRICHMENT_TEMPERATURE = 0.3
    ENRICHMENT_MAX_TOKENS = 1200
    GEOCODING_TEMPERATURE = 0.1
    GEOCODING_MAX_TOKENS = 300

    # === Vintage Bounds ===
    MIN_VINTAGE_YEAR = 1900

    # === Varietal Matching ===
    VARIETAL_FUZZY_THRESHOLD = 92  # rapidfuzz ratio (0-100) to reuse an existing varietal

    # === CORS ===
    PRODUCTION_ORIGIN = "https://www.vinho.dev"
    ALLOWED_ORIGINS: List[str] = [
        "https://www.vinho.dev",
        "https://vinho.dev",
        "http://localhost:3000",
        "http://localhost:3001",
    ]

    # === Outbound URL Validation ===
    BLOCKED_HOSTS: List[str] = [
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "metadata.google.internal",
        "metadata.google",
        "169.254.169.254",
    ]
    BLOCKED_HOST_PREFIXES: List[str] = [
        "10.",
        "192.168.",
        "169.254.",
        "fc00:",
        "fe80:",
    ] + [f"172.{octet}." for octet in range(16, 32)]
    TRUSTED_STORAGE_DOMAINS: List[str] = [
        "supabase.co",
        "supabase.in",
        "supabase.net",
    ]

    # === Security ===
    MAX_IMAGE_SIZE_MB = 10
    MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024
    ALLOWED_CONTENT_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/heic",
        "image/heif",
    ]

    # === Environment ===
    @staticmethod
    def log_level() -> str:
        """Get log level from environment. Default: INFO."""
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def database_path() -> str:
        """Get SQLite database path. Default: scan_pipeline/data/vinho.db."""
        default = str(Path(__file__).parent / "data" / "vinho.db")
        return os.getenv("DATABASE_PATH", default)

    # === Supabase ===
    @staticmethod
    def supabase_url() -> str:
        """Get Supabase project URL (storage host)."""
        return os.getenv("SUPABASE_URL", "").rstrip("/")

    @staticmethod
    def service_role_key() -> Optional[str]:
        """Get Supabase service-role key used by internal callers."""
        return os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    @staticmethod
    def jwt_secret() -> Optional[str]:
        """Get Supabase JWT secret for verifying session and service tokens."""
        return os.getenv("SUPABASE_JWT_SECRET")

    @staticmethod
    def admin_key() -> Optional[str]:
        """Get admin key accepted by administrative endpoints."""
        return os.getenv("CLEANUP_ADMIN_KEY")

    @staticmethod
    def storage_bucket() -> str:
        """Get storage bucket for scan images. Default: scans."""
        return os.getenv("STORAGE_BUCKET", "scans")

    @staticmethod
    def trusted_image_hosts() -> List[str]:
        """Extra trusted image hosts (comma-separated TRUSTED_IMAGE_HOSTS)."""
        raw = os.getenv("TRUSTED_IMAGE_HOSTS", "")
        return [h.strip().lower() for h in raw.split(",") if h.strip()]

    # === LLM ===
    @staticmethod
    def extraction_model() -> str:
        """Vision model for label extraction. Default: gpt-4o-mini."""
        return os.getenv("EXTRACTION_MODEL", "gpt-4o-mini")

    @staticmethod
    def extraction_fallback_model() -> str:
        """Stronger model used when extraction confidence is low. Default: gpt-4o."""
        return os.getenv("EXTRACTION_FALLBACK_MODEL", "gpt-4o")

    @staticmethod
    def enrichment_model() -> str:
        """Model for enrichment. Default: gpt-4o-mini."""
        return os.getenv("ENRICHMENT_MODEL", "gpt-4o-mini")

    @staticmethod
    def geocoding_model() -> str:
        """Model for winery geocoding. Default: gpt-4o-mini."""
        return os.getenv("GEOCODING_MODEL", "gpt-4o-mini")

    @staticmethod
    def llm_timeout() -> float:
        """Timeout in seconds for each LLM call. Default: 30."""
        try:
            return float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
        except ValueError:
            return 30.0

    @staticmethod
    def http_timeout() -> float:
        """Timeout in seconds for storage HTTP calls. Default: 30."""
        try:
            return float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
        except ValueError:
            return 30.0

    # === Queue ===
    @staticmethod
    def queue_default_limit() -> int:
        """Jobs claimed per process-wine-queue call. Default: 5."""
        return int(os.getenv("QUEUE_DEFAULT_LIMIT", "5"))

    @staticmethod
    def queue_max_limit() -> int:
        """Upper bound on jobs claimed per call. Default: 20."""
        return int(os.getenv("QUEUE_MAX_LIMIT", "20"))

    @staticmethod
    def max_retries() -> int:
        """Maximum sweeper requeues before a job is permanently failed. Default: 3."""
        return int(os.getenv("QUEUE_MAX_RETRIES", "3"))

    @staticmethod
    def enrichment_queue_default_limit() -> int:
        """Jobs claimed per process-enrichment-queue call. Default: 5."""
        return int(os.getenv("ENRICHMENT_QUEUE_DEFAULT_LIMIT", "5"))

    @staticmethod
    def enrichment_queue_max_limit() -> int:
        """Upper bound on enrichment jobs claimed per call. Default: 10."""
        return int(os.getenv("ENRICHMENT_QUEUE_MAX_LIMIT", "10"))

    @staticmethod
    def enrichment_backfill_scan_limit() -> int:
        """Most recent journal vintages considered when queueing a user's wines."""
        return int(os.getenv("ENRICHMENT_BACKFILL_SCAN_LIMIT", "100"))

    @staticmethod
    def sweeper_stale_minutes() -> int:
        """Minutes a job may stay in 'working' before it is considered stuck."""
        return int(os.getenv("SWEEPER_STALE_MINUTES", "15"))

    @staticmethod
    def sweeper_failed_age_minutes() -> int:
        """Minutes a failed job waits before the sweeper retries it."""
        return int(os.getenv("SWEEPER_FAILED_AGE_MINUTES", "5"))
