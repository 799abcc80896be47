"""
Collection - Protocol Readings to Local Store

Responsibilities:
- Map raw readings to target fields via the device-register cache
- Validate readings and drop the ones that break a rule
- Persist in bounded, retried batches
"""

from .accumulator import ReadingAccumulator
from .batch_writer import BatchWriter, WriteResult
from .collector import CollectionMetrics, ReadingCollector, ReadingSource
from .validator import ReadingValidator, ValidationFailure, ValidationReport

__all__ = [
    "ReadingAccumulator",
    "BatchWriter",
    "WriteResult",
    "CollectionMetrics",
    "ReadingCollector",
    "ReadingSource",
    "ReadingValidator",
    "ValidationFailure",
    "ValidationReport",
]
