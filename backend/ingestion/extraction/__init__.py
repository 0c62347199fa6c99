"""Extraction waterfall: pure functions from fetched content to event candidates."""

from ingestion.extraction.types import EventCandidate, ExtractionContext, ExtractionResult, Strategy
from ingestion.extraction.waterfall import extract

__all__ = ["EventCandidate", "ExtractionContext", "ExtractionResult", "Strategy", "extract"]
