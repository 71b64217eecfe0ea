from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional


try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.trace import Span, SpanKind
except Exception as e:  # pragma: no cover
    raise RuntimeError("opentelemetry-sdk is required") from e

from castore.version import CASTORE_VERSION

TRACER_NAME = "castore"
SPAN_PREFIX = "casctl."

_initialized = False
_enabled = False


@dataclass(frozen=True)
class TraceIds:
    trace_id_hex: str
    span_id_hex: str


def init_tracing(*, enabled: bool, service_name: str) -> None:
    """Install an SDK tracer provider once per process when tracing is enabled.

    With tracing disabled the global no-op provider stays in place, so command
    spans cost nothing and events carry no trace ids.
    """

    global _initialized, _enabled
    if _initialized and (_enabled or not enabled):
        return

    _initialized = True
    if not enabled:
        _enabled = False
        return

    resource = Resource.create({"service.name": service_name, "service.version": CASTORE_VERSION})
    trace.set_tracer_provider(TracerProvider(resource=resource))
    _enabled = True


def current_trace_ids() -> Optional[TraceIds]:
    ctx = trace.get_current_span().get_span_context()
    if ctx is None or not ctx.is_valid:
        return None
    return TraceIds(trace_id_hex=f"{int(ctx.trace_id):032x}", span_id_hex=f"{int(ctx.span_id):016x}")


def _set_attributes(span: Span, attributes: Mapping[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        try:
            span.set_attribute(key, value)
        except Exception:
            continue


@contextmanager
def command_span(command: str, *, arg_count: int, store_backend: str, audit_backend: str) -> Iterator[Span]:
    """One span per CLI invocation, named ``casctl.<command>``."""

    tracer = trace.get_tracer(TRACER_NAME, CASTORE_VERSION)
    with tracer.start_as_current_span(SPAN_PREFIX + command, kind=SpanKind.INTERNAL) as span:
        _set_attributes(
            span,
            {
                "castore.command": command,
                "castore.arg_count": arg_count,
                "castore.store.backend": store_backend,
                "castore.audit.backend": audit_backend,
            },
        )
        yield span


def record_span_outcome(span: Span, *, status: str, exit_code: int, output_name: Optional[str] = None) -> None:
    _set_attributes(
        span,
        {
            "castore.status": status,
            "castore.exit_code": exit_code,
            "castore.output_name": output_name,
        },
    )


def reset_tracing_for_tests() -> None:
    global _initialized, _enabled
    _initialized = False
    _enabled = False
