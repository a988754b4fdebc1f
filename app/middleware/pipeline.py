"""
Request pipeline shared by every HTTP entry point.

A pipeline is an ordered list of stages, each implementing
``dispatch(request, call_next) -> response``. The runner calls the first stage,
whose ``call_next`` invokes the second, and so on until the route handler. Any
stage can answer on its own without calling ``call_next``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from shared.errors import OrderError


@dataclass
class PipelineRequest:
    method: str
    path: str
    route: str
    headers: dict[str, str]
    path_params: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    body_schema: type[BaseModel] | None = None
    query_schema: type[BaseModel] | None = None
    correlation_id: str | None = None
    # Filled in by the validation stage
    parsed_body: Any = None
    parsed_query: Any = None


@dataclass
class PipelineResponse:
    status_code: int
    body: dict | None = None
    headers: dict[str, str] = field(default_factory=dict)


Handler = Callable[[PipelineRequest], Awaitable[PipelineResponse]]


class Stage(ABC):
    @abstractmethod
    async def dispatch(self, request: PipelineRequest, call_next: Handler) -> PipelineResponse:
        ...


class Pipeline:
    def __init__(self, stages: Sequence[Stage]):
        self.stages = tuple(stages)

    async def run(self, request: PipelineRequest, handler: Handler) -> PipelineResponse:
        async def invoke(index: int, req: PipelineRequest) -> PipelineResponse:
            if index == len(self.stages):
                return await handler(req)
            return await self.stages[index].dispatch(req, lambda r: invoke(index + 1, r))

        return await invoke(0, request)


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


def success(data: Any, status_code: int = 200, metadata: dict | None = None) -> PipelineResponse:
    body: dict[str, Any] = {"success": True, "data": data}
    if metadata:
        body["metadata"] = metadata
    return PipelineResponse(status_code=status_code, body=body)


def failure(error: OrderError) -> PipelineResponse:
    if error.status_code >= 500:
        # Server-side failures never expose their message or details.
        payload = {"message": error.public_message, "code": error.code}
    else:
        payload = error.to_dict()
    return PipelineResponse(
        status_code=error.status_code,
        body={"success": False, "error": payload, "code": error.code},
    )


# ---------------------------------------------------------------------------
# FastAPI adapter
# ---------------------------------------------------------------------------


async def run_endpoint(
    request: Request,
    handler: Handler,
    *,
    body_schema: type[BaseModel] | None = None,
    query_schema: type[BaseModel] | None = None,
) -> Response:
    route = request.scope.get("route")
    pipeline_request = PipelineRequest(
        method=request.method,
        path=request.url.path,
        route=getattr(route, "path", request.url.path),
        headers={k.lower(): v for k, v in request.headers.items()},
        path_params=dict(request.path_params),
        query_params=dict(request.query_params),
        body=await request.body(),
        body_schema=body_schema,
        query_schema=query_schema,
    )
    pipeline: Pipeline = request.app.state.pipeline
    response = await pipeline.run(pipeline_request, handler)

    if response.body is None:
        return Response(status_code=response.status_code, headers=response.headers)
    return JSONResponse(status_code=response.status_code, content=response.body, headers=response.headers)
