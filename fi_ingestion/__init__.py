"""Discovery, fetch orchestration and idempotent ingestion of FI data."""

from .batches import BatchStore
from .engine import IngestCounts, IngestionEngine
from .orchestrator import FetchOrchestrator, FetchSettings

__all__ = ["BatchStore", "FetchOrchestrator", "FetchSettings", "IngestCounts", "IngestionEngine"]
