from .enums import (
    JobStatus,
    GeoConfidence,
)
from .labels import (
    ScanJob,
    EnrichmentJob,
    ExtractedLabel,
    EnrichedWine,
    GeocodeResult,
    WineRecord,
)
from .response import (
    SubmitScanRequest,
    SubmitScanResponse,
    ScanJobStatusResponse,
    ProcessQueueRequest,
    ProcessQueueResponse,
    CleanupRequest,
    CleanupResponse,
    SweepResponse,
    ProcessEnrichmentQueueRequest,
    ProcessEnrichmentQueueResponse,
    EnrichWinesRequest,
    EnrichWinesResponse,
)

__all__ = [
    "JobStatus",
    "GeoConfidence",
    "ScanJob",
    "EnrichmentJob",
    "ExtractedLabel",
    "EnrichedWine",
    "GeocodeResult",
    "WineRecord",
    "SubmitScanRequest",
    "SubmitScanResponse",
    "ScanJobStatusResponse",
    "ProcessQueueRequest",
    "ProcessQueueResponse",
    "CleanupRequest",
    "CleanupResponse",
    "SweepResponse",
    "ProcessEnrichmentQueueRequest",
    "ProcessEnrichmentQueueResponse",
    "EnrichWinesRequest",
    "EnrichWinesResponse",
]
