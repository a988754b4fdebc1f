import logging
import time
import uuid

from app.config import Settings
from app.middleware.metrics import MetricsStage
from app.middleware.pipeline import (
    Handler,
    Pipeline,
    PipelineRequest,
    PipelineResponse,
    Stage,
    failure,
)
from app.utils.logging import correlation_context
from shared.errors import OrderError, ValidationFailure
from shared.validation import parse_json, validate

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"
_INCOMING_CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")


class CorrelationIdStage(Stage):
    """Assigns the correlation id and binds it to the logging context."""

    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        correlation_id = next(
            (request.headers[h] for h in _INCOMING_CORRELATION_HEADERS if request.headers.get(h)),
            None,
        ) or str(uuid.uuid4())
        request.correlation_id = correlation_id

        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class ResponseLoggingStage(Stage):
    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        logger.info(
            "Received %s %s",
            request.method,
            request.path,
            extra={"method": request.method, "path": request.path},
        )
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "Completed %s %s with %d",
            request.method,
            request.path,
            response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return response


class CorsStage(Stage):
    def __init__(self, allow_origins: list[str], allow_methods: list[str], allow_headers: list[str]):
        self._allow_origins = allow_origins
        self._allow_methods = ", ".join(allow_methods)
        self._allow_headers = ", ".join(allow_headers)

    def _headers(self, request: PipelineRequest) -> dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": self._allow_methods,
            "Access-Control-Allow-Headers": self._allow_headers,
            "Access-Control-Expose-Headers": CORRELATION_HEADER,
        }
        origin = request.headers.get("origin")
        if "*" in self._allow_origins:
            headers["Access-Control-Allow-Origin"] = "*"
        elif origin in self._allow_origins:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers

    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        if request.method == "OPTIONS":
            return PipelineResponse(status_code=204, headers=self._headers(request))
        response = await call_next(request)
        response.headers.update(self._headers(request))
        return response


class ErrorTranslationStage(Stage):
    """The one place where a failure becomes an error envelope."""

    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        try:
            return await call_next(request)
        except TimeoutError:
            raise
        except OrderError as exc:
            log = logger.error if exc.status_code >= 500 else logger.warning
            log(
                "Request failed with %s",
                exc.code,
                extra={"error_code": exc.code, "error": exc.message, "path": request.path},
            )
            return failure(exc)
        except Exception:
            logger.exception("Unhandled error", extra={"path": request.path})
            return failure(OrderError())


class RequestValidationStage(Stage):
    """Parses and validates the body / query against the route's schemas."""

    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        violations = []

        if request.query_schema is not None:
            result = validate(request.query_schema, request.query_params, root="query")
            violations.extend(result.violations)
            request.parsed_query = result.value

        if request.body_schema is not None:
            try:
                raw = parse_json(request.body)
            except ValidationFailure as exc:
                violations.extend(exc.violations)
            else:
                result = validate(request.body_schema, raw)
                violations.extend(result.violations)
                request.parsed_body = result.value

        if violations:
            logger.info(
                "Request validation failed",
                extra={"path": request.path, "violation_count": len(violations)},
            )
            return failure(ValidationFailure(violations))
        return await call_next(request)


def build_pipeline(settings: Settings) -> Pipeline:
    # Request flows top to bottom; the response travels back up, so error
    # translation runs before CORS headers, metrics and response logging see it.
    return Pipeline(
        [
            CorrelationIdStage(),
            ResponseLoggingStage(),
            MetricsStage(),
            CorsStage(
                settings.cors_allow_origins,
                settings.cors_allow_methods,
                settings.cors_allow_headers,
            ),
            ErrorTranslationStage(),
            RequestValidationStage(),
        ]
    )
