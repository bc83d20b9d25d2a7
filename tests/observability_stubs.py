from __future__ import annotations

import sys
import types
from typing import Any, cast

import pytest


class StubSpan:
    def __init__(self, name: str, kind: Any) -> None:
        self.name = name
        self.kind = kind
        self.attributes: dict[str, Any] = {}
        self.status: Any | None = None
        self.exceptions: list[BaseException] = []
        self.exit_exception: BaseException | None = None
        self.ended = False

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def record_exception(self, exc: BaseException) -> None:
        self.exceptions.append(exc)

    def set_status(self, status: Any) -> None:
        self.status = status


class StubSpanContext:
    def __init__(self, span: StubSpan) -> None:
        self.span = span

    def __enter__(self) -> StubSpan:
        return self.span

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.span.ended = True
        if exc is not None:
            self.span.exit_exception = exc
        return False


class StubTracer:
    def __init__(self) -> None:
        self.spans: list[StubSpan] = []

    def start_as_current_span(self, name: str, kind: Any | None = None, **_: Any) -> StubSpanContext:
        span = StubSpan(name, kind)
        self.spans.append(span)
        return StubSpanContext(span)


class StubScope:
    def __init__(self) -> None:
        self.tags: dict[str, Any] = {}
        self.exited = False

    def __enter__(self) -> StubScope:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.exited = True
        return False

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value


class StubSentry:
    def __init__(self) -> None:
        self.breadcrumbs: list[dict[str, Any]] = []
        self.captured: list[BaseException] = []
        self.scopes: list[StubScope] = []

    def add_breadcrumb(self, **breadcrumb: Any) -> None:
        self.breadcrumbs.append(breadcrumb)

    def capture_exception(self, exc: BaseException) -> None:
        self.captured.append(exc)

    def new_scope(self) -> StubScope:
        scope = StubScope()
        self.scopes.append(scope)
        return scope


def setup_stub_opentelemetry(monkeypatch: pytest.MonkeyPatch) -> StubTracer:
    tracer = StubTracer()
    trace_module = cast(Any, types.ModuleType("opentelemetry.trace"))
    trace_module.get_tracer = lambda name: tracer
    trace_module.SpanKind = types.SimpleNamespace(CLIENT="client")

    class Status:
        def __init__(self, status_code: Any, description: str | None = None) -> None:
            self.status_code = status_code
            self.description = description

    trace_module.Status = Status
    trace_module.StatusCode = types.SimpleNamespace(OK="ok", ERROR="error")
    otel_module = cast(Any, types.ModuleType("opentelemetry"))
    otel_module.trace = trace_module
    monkeypatch.setitem(sys.modules, "opentelemetry", otel_module)
    monkeypatch.setitem(sys.modules, "opentelemetry.trace", trace_module)
    return tracer


def setup_stub_sentry(monkeypatch: pytest.MonkeyPatch) -> StubSentry:
    sentry = StubSentry()
    sentry_module = cast(Any, types.ModuleType("sentry_sdk"))
    sentry_module.add_breadcrumb = sentry.add_breadcrumb
    sentry_module.capture_exception = sentry.capture_exception
    sentry_module.new_scope = sentry.new_scope
    monkeypatch.setitem(sys.modules, "sentry_sdk", sentry_module)
    return sentry


def hide_optional_providers(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("opentelemetry", "opentelemetry.trace", "sentry_sdk"):
        monkeypatch.setitem(sys.modules, name, None)


__all__ = [
    "StubScope",
    "StubSentry",
    "StubSpan",
    "StubSpanContext",
    "StubTracer",
    "hide_optional_providers",
    "setup_stub_opentelemetry",
    "setup_stub_sentry",
]
