"""
Enums for type-safe string constants in the scan pipeline.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle state of a ScanJob (queue row)."""
    PENDING = "pending"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"


class GeoConfidence(str, Enum):
    """How precisely a producer coordinate is known."""
    EXACT = "exact"              # The winery or vineyard itself
    APPROXIMATE = "approximate"  # Nearby town or estate area
    REGION = "region"            # Centroid of the wine region
