import logging

from fastapi import APIRouter, Depends, Request, Response

from app.middleware.pipeline import PipelineRequest, PipelineResponse, run_endpoint, success
from app.schemas.order import ListOrdersQuery, OrderCreate, OrderUpdate
from app.services.order_service import OrderService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


@router.post("")
async def create_order(
    request: Request,
    service: OrderService = Depends(get_order_service),
) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        body: OrderCreate = req.parsed_body
        logger.info("Received create_order request", extra={"customer_id": body.customer_id})
        order = await service.create_order(body, correlation_id=req.correlation_id)
        return success(order.to_wire(), status_code=201)

    return await run_endpoint(request, handler, body_schema=OrderCreate)


@router.get("")
async def list_orders(
    request: Request,
    service: OrderService = Depends(get_order_service),
) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        page = await service.list_orders(req.parsed_query)
        return success(
            [order.to_wire() for order in page.items],
            metadata={"count": len(page.items), "nextToken": page.next_token},
        )

    return await run_endpoint(request, handler, query_schema=ListOrdersQuery)


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    service: OrderService = Depends(get_order_service),
) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        order = await service.get_order(order_id)
        return success(order.to_wire())

    return await run_endpoint(request, handler)


@router.put("/{order_id}")
async def update_order(
    order_id: str,
    request: Request,
    service: OrderService = Depends(get_order_service),
) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        patch: OrderUpdate = req.parsed_body
        logger.info(
            "Received update_order request",
            extra={"order_id": order_id, "expected_version": patch.expected_version},
        )
        order = await service.update_order(
            order_id,
            patch,
            patch.expected_version,
            correlation_id=req.correlation_id,
        )
        return success(order.to_wire())

    return await run_endpoint(request, handler, body_schema=OrderUpdate)


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    request: Request,
    service: OrderService = Depends(get_order_service),
) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        await service.delete_order(order_id, correlation_id=req.correlation_id)
        return success({"orderId": order_id, "deleted": True})

    return await run_endpoint(request, handler)


@router.options("")
@router.options("/{order_id}")
async def preflight(request: Request) -> Response:
    async def handler(req: PipelineRequest) -> PipelineResponse:
        return PipelineResponse(status_code=204)

    return await run_endpoint(request, handler)
