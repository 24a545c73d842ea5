"""Observability primitives.

This package provides a small foundation for:
- Recording per-source forwarding outcomes (deliveries, initializations, failures)
  as durable records.
- Capturing both "occurred at" and "logged at" timestamps.
- Persisting records to a sink (DuckDB by default) without blocking the event loop.

Plain progress and failure messages go through `logging`; these records are the
queryable trail of which record ranges went where.
"""

from .models import ObservabilityRecord
from .recorder import ObservabilityRecorder
from .sinks import DuckDBObservabilitySink, InMemoryObservabilitySink, ObservabilitySink

__all__ = [
    "DuckDBObservabilitySink",
    "InMemoryObservabilitySink",
    "ObservabilityRecord",
    "ObservabilityRecorder",
    "ObservabilitySink",
]
