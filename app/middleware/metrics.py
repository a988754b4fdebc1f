import time

from app.metrics import REQUEST_COUNT, REQUEST_LATENCY
from app.middleware.pipeline import Handler, PipelineRequest, PipelineResponse, Stage


class MetricsStage(Stage):
    """Request count and latency, labelled by route template to keep cardinality low."""

    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        REQUEST_COUNT.labels(
            method=request.method,
            route=request.route,
            status=str(response.status_code),
        ).inc()
        REQUEST_LATENCY.labels(method=request.method, route=request.route).observe(elapsed)

        return response
