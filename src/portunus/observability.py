"""Tracing and error reporting around Frontend API calls."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import ExitStack
from typing import TYPE_CHECKING, Any

import msgspec

from .exceptions import ServerTransientError, ServerValidationError, UserCancelledError

if TYPE_CHECKING:
    from .transport import ApiRequest

logger = logging.getLogger(__name__)

BREADCRUMB_CATEGORY = "portunus.api"


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Which optional providers observe API calls.

    OpenTelemetry and Sentry are only used when they are importable; turning a
    provider on here never makes it a hard requirement.
    """

    enabled: bool = True
    tracing: bool = True
    tracer_name: str = "portunus"
    span_name: str = "portunus.api"
    error_reporting: bool = True
    breadcrumbs: bool = False


class ApiCall:
    """An API request that is being observed."""

    __slots__ = ("operation", "span", "started", "_stack")

    def __init__(self, operation: str, span: Any | None, stack: ExitStack) -> None:
        self.operation = operation
        self.span = span
        self.started = time.perf_counter()
        self._stack = stack

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0

    def finish(self, error: BaseException | None = None) -> None:
        if error is None:
            self._stack.__exit__(None, None, None)
        else:
            self._stack.__exit__(type(error), error, error.__traceback__)


def _reportable(error: BaseException) -> bool:
    # user outcomes and cancellations are not reported
    return not isinstance(error, (ServerValidationError, UserCancelledError, asyncio.CancelledError))


class Observability:
    """Wrap Frontend API calls in spans and report unexpected failures."""

    def __init__(self, config: ObservabilityConfig | None = None) -> None:
        self.config = config or ObservabilityConfig()
        self._trace: Any | None = None
        self._sentry: Any | None = None
        if not self.config.enabled:
            return
        if self.config.tracing:
            try:
                from opentelemetry import trace  # type: ignore[import-not-found]
            except ImportError:
                logger.debug("opentelemetry is not installed; API calls are not traced")
            else:
                self._trace = trace
        if self.config.error_reporting or self.config.breadcrumbs:
            try:
                import sentry_sdk  # type: ignore[import-not-found]
            except ImportError:
                logger.debug("sentry_sdk is not installed; API failures are not reported")
            else:
                self._sentry = sentry_sdk

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def on_api_start(self, request: "ApiRequest") -> ApiCall | None:
        if not self.config.enabled:
            return None
        stack = ExitStack()
        span = None
        if self._trace is not None:
            tracer = self._trace.get_tracer(self.config.tracer_name)
            span = stack.enter_context(
                tracer.start_as_current_span(self.config.span_name, kind=self._trace.SpanKind.CLIENT)
            )
            span.set_attribute("api.method", request.method)
            span.set_attribute("api.path", request.path)
            span.set_attribute("api.operation", request.operation)
        if self._sentry is not None:
            if self.config.breadcrumbs:
                self._sentry.add_breadcrumb(
                    category=BREADCRUMB_CATEGORY,
                    message=f"{request.method} {request.path}",
                    data={"operation": request.operation},
                )
            scope = stack.enter_context(self._sentry.new_scope())
            scope.set_tag("api.operation", request.operation)
        return ApiCall(request.operation, span, stack)

    def on_api_success(self, call: ApiCall | None, *, status: int | None = None) -> None:
        if call is None:
            return
        if call.span is not None:
            call.span.set_attribute("api.result", "success")
            if status is not None:
                call.span.set_attribute("api.status", status)
            call.span.set_status(self._trace.Status(self._trace.StatusCode.OK))
        logger.debug("%s finished with %s in %.1fms", call.operation, status, call.elapsed_ms)
        call.finish()

    def on_api_error(self, call: ApiCall | None, error: BaseException) -> None:
        reportable = _reportable(error)
        if call is not None and call.span is not None:
            span = call.span
            span.set_attribute("api.result", "error")
            status = getattr(error, "status", None)
            if status is not None:
                span.set_attribute("api.status", status)
            if isinstance(error, ServerTransientError):
                span.set_attribute("api.transient", True)
            span.record_exception(error)
            span.set_status(self._trace.Status(self._trace.StatusCode.ERROR, description=str(error)))
        if reportable and self._sentry is not None and self.config.error_reporting:
            self._sentry.capture_exception(error)
        if call is not None:
            logger.debug("%s failed after %.1fms: %r", call.operation, call.elapsed_ms, error)
            call.finish(error)


__all__ = ["ApiCall", "Observability", "ObservabilityConfig"]
