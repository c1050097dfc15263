"""Shared dependencies for API routes."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..config import Config
from ..errors import AuthError
from ..feature_flags import FeatureFlags, get_feature_flags
from ..services.backfill import EnrichmentBackfill
from ..services.enrichment_queue import EnrichmentQueueStore
from ..services.image_intake import ImageIntake
from ..services.pipeline import ScanPipeline
from ..services.queue_store import QueueStore
from ..services.sweeper import Sweeper
from ..services.wine_repository import WineRepository
from ..security import authenticate_user, verify_internal_request


@lru_cache(maxsize=1)
def get_queue_store() -> QueueStore:
    """Queue repository singleton."""
    return QueueStore(Config.database_path())


@lru_cache(maxsize=1)
def get_wine_repository() -> WineRepository:
    """Wine graph repository singleton."""
    return WineRepository(Config.database_path())


@lru_cache(maxsize=1)
def get_enrichment_queue() -> EnrichmentQueueStore:
    """Enrichment backfill queue singleton."""
    return EnrichmentQueueStore(Config.database_path())


@lru_cache(maxsize=1)
def get_image_intake() -> ImageIntake:
    return ImageIntake()


def get_pipeline(
    queue: QueueStore = Depends(get_queue_store),
    repository: WineRepository = Depends(get_wine_repository),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> ScanPipeline:
    return ScanPipeline(queue=queue, repository=repository, flags=flags)


def get_sweeper(
    queue: QueueStore = Depends(get_queue_store),
    repository: WineRepository = Depends(get_wine_repository),
    intake: ImageIntake = Depends(get_image_intake),
    enrichment_queue: EnrichmentQueueStore = Depends(get_enrichment_queue),
) -> Sweeper:
    return Sweeper(queue=queue, repository=repository, intake=intake, enrichment_queue=enrichment_queue)


def get_backfill(
    enrichment_queue: EnrichmentQueueStore = Depends(get_enrichment_queue),
    repository: WineRepository = Depends(get_wine_repository),
) -> EnrichmentBackfill:
    return EnrichmentBackfill(queue=enrichment_queue, repository=repository)


def require_internal(authorization: Optional[str] = Header(None)) -> None:
    """Service role or admin key only. Failures are a generic 401."""
    try:
        verify_internal_request(authorization)
    except AuthError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from None


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """User id from the Supabase session token."""
    try:
        return authenticate_user(authorization)
    except AuthError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
