import json

import pytest

from app.middleware.pipeline import Pipeline, PipelineRequest, PipelineResponse, Stage, failure, success
from app.middleware.stages import (
    CORRELATION_HEADER,
    CorrelationIdStage,
    CorsStage,
    ErrorTranslationStage,
    RequestValidationStage,
    build_pipeline,
)
from app.schemas.order import ListOrdersQuery, OrderCreate
from app.utils.logging import get_correlation_id
from shared.errors import NotFound, OrderError, StoreUnavailable


def make_request(method="GET", path="/orders", **kwargs) -> PipelineRequest:
    kwargs.setdefault("headers", {})
    return PipelineRequest(method=method, path=path, route=path, **kwargs)


class Recorder(Stage):
    def __init__(self, name, log):
        self.name = name
        self.log = log

    async def dispatch(self, request, call_next):
        self.log.append(f"{self.name}:in")
        response = await call_next(request)
        self.log.append(f"{self.name}:out")
        return response


class ShortCircuit(Stage):
    async def dispatch(self, request, call_next):
        return PipelineResponse(status_code=418, body={"short": True})


async def ok_handler(request):
    return success({"ok": True})


class TestPipelineRunner:
    async def test_stages_run_in_order_around_the_handler(self):
        log = []

        async def handler(request):
            log.append("handler")
            return success(None)

        await Pipeline([Recorder("a", log), Recorder("b", log)]).run(make_request(), handler)

        assert log == ["a:in", "b:in", "handler", "b:out", "a:out"]

    async def test_a_stage_can_answer_without_calling_next(self):
        log = []

        async def handler(request):
            log.append("handler")
            return success(None)

        response = await Pipeline([Recorder("a", log), ShortCircuit(), Recorder("b", log)]).run(
            make_request(), handler
        )

        assert response.status_code == 418
        assert log == ["a:in", "a:out"]

    async def test_empty_pipeline_calls_the_handler(self):
        response = await Pipeline([]).run(make_request(), ok_handler)

        assert response.body == {"success": True, "data": {"ok": True}}


class TestEnvelope:
    def test_success_with_metadata(self):
        response = success([1, 2], metadata={"count": 2})

        assert response.status_code == 200
        assert response.body == {"success": True, "data": [1, 2], "metadata": {"count": 2}}

    def test_client_error_keeps_message_and_details(self):
        response = failure(NotFound("Order o-1 not found", details={"orderId": "o-1"}))

        assert response.status_code == 404
        assert response.body == {
            "success": False,
            "error": {"message": "Order o-1 not found", "code": "NOT_FOUND", "details": {"orderId": "o-1"}},
            "code": "NOT_FOUND",
        }

    def test_server_error_is_sanitized(self):
        response = failure(StoreUnavailable("connection to 10.0.0.5 refused", details={"host": "10.0.0.5"}))

        assert response.status_code == 500
        assert response.body["error"] == {
            "message": "Service temporarily unavailable",
            "code": "STORE_UNAVAILABLE",
        }


class TestCorrelationIdStage:
    async def test_generates_an_id_and_binds_it_for_the_handler(self):
        seen = {}

        async def handler(request):
            seen["context"] = get_correlation_id()
            seen["request"] = request.correlation_id
            return success(None)

        response = await Pipeline([CorrelationIdStage()]).run(make_request(), handler)

        assert seen["context"] == seen["request"]
        assert response.headers[CORRELATION_HEADER] == seen["request"]
        assert get_correlation_id() is None

    @pytest.mark.parametrize("header", ["x-correlation-id", "x-request-id"])
    async def test_reuses_incoming_id(self, header):
        response = await Pipeline([CorrelationIdStage()]).run(
            make_request(headers={header: "abc-123"}), ok_handler
        )

        assert response.headers[CORRELATION_HEADER] == "abc-123"


class TestCorsStage:
    def stage(self, origins=("*",)):
        return CorsStage(list(origins), ["GET", "POST"], ["Content-Type"])

    async def test_preflight_is_answered_directly(self):
        called = []

        async def handler(request):
            called.append(True)
            return success(None)

        response = await Pipeline([self.stage()]).run(make_request("OPTIONS"), handler)

        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["Access-Control-Allow-Methods"] == "GET, POST"
        assert called == []

    async def test_headers_are_added_to_responses(self):
        response = await Pipeline([self.stage()]).run(make_request(), ok_handler)

        assert response.headers["Access-Control-Allow-Headers"] == "Content-Type"
        assert response.headers["Access-Control-Expose-Headers"] == CORRELATION_HEADER

    async def test_listed_origin_is_echoed(self):
        response = await Pipeline([self.stage(["https://shop.example.com"])]).run(
            make_request(headers={"origin": "https://shop.example.com"}), ok_handler
        )

        assert response.headers["Access-Control-Allow-Origin"] == "https://shop.example.com"

    async def test_unlisted_origin_gets_no_allow_origin(self):
        response = await Pipeline([self.stage(["https://shop.example.com"])]).run(
            make_request(headers={"origin": "https://evil.example.com"}), ok_handler
        )

        assert "Access-Control-Allow-Origin" not in response.headers


class TestErrorTranslationStage:
    async def test_classified_error_becomes_envelope(self):
        async def handler(request):
            raise NotFound("Order o-1 not found")

        response = await Pipeline([ErrorTranslationStage()]).run(make_request(), handler)

        assert response.status_code == 404
        assert response.body["code"] == "NOT_FOUND"

    async def test_unexpected_error_is_sanitized(self):
        async def handler(request):
            raise RuntimeError("password=hunter2 at db.internal")

        response = await Pipeline([ErrorTranslationStage()]).run(make_request(), handler)

        assert response.status_code == 500
        assert response.body["error"] == {"message": OrderError.public_message, "code": "INTERNAL_ERROR"}
        assert "hunter2" not in str(response.body)

    async def test_timeouts_propagate(self):
        async def handler(request):
            raise TimeoutError()

        with pytest.raises(TimeoutError):
            await Pipeline([ErrorTranslationStage()]).run(make_request(), handler)


class TestRequestValidationStage:
    async def test_valid_body_is_parsed(self, order_payload):
        seen = {}

        async def handler(request):
            seen["body"] = request.parsed_body
            return success(None)

        await Pipeline([RequestValidationStage()]).run(
            make_request("POST", body=json.dumps(order_payload).encode(), body_schema=OrderCreate),
            handler,
        )

        assert isinstance(seen["body"], OrderCreate)

    async def test_invalid_body_never_reaches_the_handler(self):
        called = []

        async def handler(request):
            called.append(True)
            return success(None)

        response = await Pipeline([RequestValidationStage()]).run(
            make_request("POST", body=b'{"customerId": "c-1"}', body_schema=OrderCreate), handler
        )

        assert called == []
        assert response.status_code == 400
        fields = [v["field"] for v in response.body["error"]["details"]["violations"]]
        assert fields == ["customerEmail", "items", "shippingAddress"]

    async def test_query_and_body_violations_are_reported_together(self):
        response = await Pipeline([RequestValidationStage()]).run(
            make_request(
                "POST",
                query_params={"limit": "0"},
                query_schema=ListOrdersQuery,
                body=b"not json",
                body_schema=OrderCreate,
            ),
            ok_handler,
        )

        codes = [v["code"] for v in response.body["error"]["details"]["violations"]]
        assert codes == ["GREATER_THAN_EQUAL", "INVALID_JSON"]


class TestBuiltPipeline:
    async def test_error_response_carries_correlation_and_cors_headers(self, settings):
        async def handler(request):
            raise NotFound()

        response = await build_pipeline(settings).run(
            make_request(headers={"x-correlation-id": "cid-9"}), handler
        )

        assert response.status_code == 404
        assert response.headers[CORRELATION_HEADER] == "cid-9"
        assert response.headers["Access-Control-Allow-Origin"] == "*"
