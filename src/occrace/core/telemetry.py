"""OpenTelemetry span wrappers for race writers and scenario steps."""

from __future__ import annotations

from opentelemetry import trace

_TRACER_NAME = "occrace"


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider (no-op unless one is installed)."""
    return trace.get_tracer(name)


class race_span:
    """Create an OpenTelemetry span named ``occrace.<name>``.

    Attribute values are stringified unless they are already OTel-compatible
    scalars.  Exceptions are recorded on the span with a full stack trace and
    the span status is set to ERROR before the exception is re-raised.

    Usage::

        with race_span("writer", writer="writer-a", key=key) as span:
            ...
    """

    def __init__(self, name: str, **attributes: object) -> None:
        self._span_name = f"occrace.{name}"
        self._attributes = {
            f"occrace.{k}": v if isinstance(v, str | bool | int | float) else str(v)
            for k, v in attributes.items()
            if v is not None
        }
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        self._span = get_tracer().start_span(self._span_name, attributes=self._attributes)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
