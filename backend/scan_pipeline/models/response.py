"""
Pydantic request/response models for the scan pipeline API.

Client contract for submit scan (DO NOT CHANGE field names, the mobile
apps read them as-is):
{
  "scanId": 12,
  "queueItemId": 34,
  "message": "Scan queued for processing"
}
"""

from typing import Optional

from pydantic import BaseModel, Field


class SubmitScanRequest(BaseModel):
    """JSON body alternative to a multipart upload."""
    image_base64: str = Field(..., description="Base64-encoded image (data: URI prefix allowed)")
    content_type: str = Field("image/jpeg", description="MIME type of the encoded image")
    ocr_text: Optional[str] = Field(None, description="On-device OCR hint text")
    idempotency_key: Optional[str] = Field(None, max_length=128)


class SubmitScanResponse(BaseModel):
    scanId: int
    queueItemId: int
    message: str


class ScanJobStatusResponse(BaseModel):
    """Queue status shown by the journal banner."""
    queueItemId: int
    scanId: Optional[int] = None
    status: str
    error_message: Optional[str] = None
    retry_count: int = 0
    matched_vintage_id: Optional[int] = None


class ProcessQueueRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, description="Jobs to claim (capped server-side)")


class ProcessQueueResponse(BaseModel):
    success: bool
    processed_count: int
    failed_count: int = 0
    total: int = 0


class CleanupRequest(BaseModel):
    user_id: Optional[str] = None
    delete_all: bool = False


class CleanupResponse(BaseModel):
    success: bool
    message: str
    stats: dict[str, int]
    total_deleted: int


class SweepResponse(BaseModel):
    success: bool
    requeued: int
    finalized: int


class ProcessEnrichmentQueueRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, description="Jobs to claim (capped server-side)")
    action: str = Field("process", description="Only 'process' is supported")


class ProcessEnrichmentQueueResponse(BaseModel):
    success: bool
    processed: int
    failed: int = 0
    total: int = 0
    message: str


class EnrichWinesRequest(BaseModel):
    action: str = Field("enrich", description="Only 'enrich' is supported")


class EnrichWinesResponse(BaseModel):
    success: bool
    queued: int
    skipped: int
    message: str
