from .scan import router as scan_router
from .queue import router as queue_router
from .admin import router as admin_router
from .enrichment import router as enrichment_router

__all__ = ["scan_router", "queue_router", "admin_router", "enrichment_router"]
