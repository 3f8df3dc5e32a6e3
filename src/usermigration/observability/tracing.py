"""
OpenTelemetry availability and the ``traced`` decorator.

OpenTelemetry is an optional dependency (``pip install usermigration[telemetry]``).
Everything in this module degrades to a no-op when it is not installed.

Example:
    >>> from usermigration.observability import traced, create_tracer
    >>>
    >>> class SnapshotService:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
    ...
    ...     @traced("usermigration.snapshot.create")
    ...     async def create(self) -> None:
    ...         pass
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, ParamSpec, TypeVar

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


P = ParamSpec("P")
R = TypeVar("R")


def traced(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator that wraps an async method in a span.

    The owning object must expose ``_tracer`` (a ``Tracer``) and
    ``_enable_tracing``. When tracing is disabled the method is called
    directly.

    Args:
        name: Span name (e.g., "usermigration.rollback.rollback")
        attributes: Static attributes to attach to the span

    Returns:
        Decorated function
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(func)
        async def async_wrapper(self: Any, *args: P.args, **kwargs: P.kwargs) -> R:
            tracer = getattr(self, "_tracer", None)
            if not getattr(self, "_enable_tracing", False) or tracer is None:
                return await func(self, *args, **kwargs)  # type: ignore[misc, no-any-return]

            with tracer.span(name, attributes or {}):
                return await func(self, *args, **kwargs)  # type: ignore[misc, no-any-return]

        return async_wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "OTEL_AVAILABLE",
    "traced",
]
