"""
Tracer protocol and implementations.

Components receive a tracer as a dependency instead of talking to
OpenTelemetry directly, so tests can swap in ``MockTracer`` or ``NullTracer``.

Example:
    >>> from usermigration.observability import create_tracer
    >>>
    >>> class PhaseRunner:
    ...     def __init__(self, tracer: Tracer | None = None):
    ...         self._tracer = tracer or create_tracer(__name__)
    ...
    ...     async def run(self, phase: str) -> None:
    ...         with self._tracer.span("usermigration.phase.run", {"phase": phase}):
    ...             ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from usermigration.observability.tracing import OTEL_AVAILABLE

if TYPE_CHECKING:
    from opentelemetry.trace import Span


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for tracers that create spans.

    Implementations:
    - NullTracer: no-op, used when tracing is disabled
    - OpenTelemetryTracer: real spans through the OpenTelemetry API
    - MockTracer: records span names and attributes for assertions
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Create a span context manager.

        Args:
            name: Span name (e.g., "usermigration.migrator.migrate")
            attributes: Span attributes (optional)

        Returns:
            Context manager that yields the Span or None
        """
        ...

    @property
    def enabled(self) -> bool:
        """True if this tracer produces real spans."""
        ...


class NullTracer:
    """No-op tracer. Creates no spans."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Args:
        tracer_name: Name for the tracer (typically __name__)

    Raises:
        ImportError: If OpenTelemetry is not installed
    """

    def __init__(self, tracer_name: str) -> None:
        from opentelemetry import trace

        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
        )

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer for tests that records every span it is asked to open.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("usermigration.rollback.rollback"):
        ...     pass
        >>> tracer.span_names
        ['usermigration.rollback.rollback']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        """Span names in the order they were opened."""
        return [name for name, _ in self.spans]


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    Create the appropriate tracer for a component.

    Args:
        name: Tracer name (typically __name__)
        enable_tracing: Whether tracing should be enabled (default True)

    Returns:
        OpenTelemetryTracer if enabled and installed, NullTracer otherwise
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
