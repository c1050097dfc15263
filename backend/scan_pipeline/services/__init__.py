from .queue_store import QueueStore
from .label_extractor import LabelExtractor
from .enrichment import EnrichmentEngine
from .geocoder import Geocoder
from .wine_repository import WineRepository
from .image_intake import ImageIntake, SupabaseStorage
from .pipeline import ScanPipeline
from .sweeper import Sweeper

__all__ = [
    "QueueStore",
    "LabelExtractor",
    "EnrichmentEngine",
    "Geocoder",
    "WineRepository",
    "ImageIntake",
    "SupabaseStorage",
    "ScanPipeline",
    "Sweeper",
]
