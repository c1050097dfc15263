"""Admin data reset endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..errors import ValidationError
from ..models import CleanupRequest, CleanupResponse
from ..services.sweeper import Sweeper
from .deps import get_sweeper, require_internal

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_internal)])


@router.post("/cleanup-wine-data", response_model=CleanupResponse)
async def cleanup_wine_data(
    body: CleanupRequest,
    sweeper: Sweeper = Depends(get_sweeper),
) -> CleanupResponse:
    """
    Delete one user's scan data, or everything with delete_all.

    Per-user cleanup removes queue entries, tastings, scans and stored images.
    delete_all also clears the shared producer/wine/vintage graph.
    """
    try:
        result = await sweeper.cleanup(user_id=body.user_id, delete_all=body.delete_all)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message) from None

    logger.warning(f"Admin cleanup ran: {result.message}")
    return CleanupResponse(
        success=True,
        message=result.message,
        stats=result.stats,
        total_deleted=result.total_deleted,
    )
