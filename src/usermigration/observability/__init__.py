"""
Observability utilities for usermigration.

Tracing is optional: when OpenTelemetry is not installed every tracer is a
``NullTracer`` and spans cost nothing.

Example:
    >>> from usermigration.observability import create_tracer
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("usermigration.example"):
    ...     pass
"""

from usermigration.observability.attributes import (
    ATTR_BATCH_INDEX,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_LEGACY_TABLE,
    ATTR_MIGRATION_PHASE,
    ATTR_MIGRATION_STEP,
    ATTR_RECORD_ID,
    ATTR_RECORDS_TOTAL,
    ATTR_USER_ROLE,
    ATTR_WORKER_COUNT,
)
from usermigration.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from usermigration.observability.tracing import (
    OTEL_AVAILABLE,
    traced,
)

__all__ = [
    "OTEL_AVAILABLE",
    "traced",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_BATCH_INDEX",
    "ATTR_BATCH_SIZE",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_LEGACY_TABLE",
    "ATTR_MIGRATION_PHASE",
    "ATTR_MIGRATION_STEP",
    "ATTR_RECORD_ID",
    "ATTR_RECORDS_TOTAL",
    "ATTR_USER_ROLE",
    "ATTR_WORKER_COUNT",
]
