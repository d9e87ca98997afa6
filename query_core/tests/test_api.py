import asyncio
import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from query_core.api.app import create_app
from query_core.config.settings import Settings
from query_core.flows.validated_query import ValidatedQueryOrchestrator
from query_core.providers import LlamaServerClient
from query_core.schema.validator import SchemaValidator, schema_fingerprint

from conftest import FakeDispatcher, query_body

ENDPOINT = "/v1/validated-query"
JSON = {"Content-Type": "application/json"}


def schema_text(schema) -> bytes:
    return json.dumps(schema, separators=(",", ":")).encode()


def raw_body(schema) -> bytes:
    return b'{"schema":' + schema_text(schema) + b',"messages":[{"role":"user","content":"go"}]}'


def app_client(orchestrator, **overrides):
    cfg = Settings(**{"request_timeout": 5, "llm_server_url": "http://llm.test", **overrides})
    app = create_app(orchestrator=orchestrator, cfg=cfg)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_success_returns_exact_payload(client):
    resp = await client.post(ENDPOINT, json=query_body())

    assert resp.status_code == 200
    assert resp.content == b'{"name":"John","age":25}'
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.headers["x-request-id"]


@pytest.mark.asyncio
async def test_validation_failure_envelope():
    orch = ValidatedQueryOrchestrator(SchemaValidator(), FakeDispatcher(payload=b'{"name":"John"}'))
    async with app_client(orch) as ac:
        resp = await ac.post(ENDPOINT, json=query_body())

    assert resp.status_code == 422
    data = resp.json()
    assert list(data) == [
        "error", "message", "code", "details", "response", "context", "timestamp", "request_id",
    ]
    assert data["error"] == "validation_error"
    assert data["code"] == "VALIDATION_FAILED"
    assert data["response"] == {"name": "John"}
    assert data["request_id"] == resp.headers["x-request-id"]


@pytest.mark.asyncio
async def test_validation_failure_keeps_offending_payload_bytes():
    payload = b'{"name":"John","big":1e400,"price":1.50}'
    orch = ValidatedQueryOrchestrator(SchemaValidator(), FakeDispatcher(payload=payload))
    async with app_client(orch) as ac:
        resp = await ac.post(ENDPOINT, json=query_body())

    assert resp.status_code == 422
    assert b'"response": ' + payload in resp.content
    assert b"Infinity" not in resp.content


@pytest.mark.asyncio
async def test_invalid_schema_envelope(client, dispatcher):
    resp = await client.post(ENDPOINT, json=query_body(schema={"type": "invalid_type"}))

    assert resp.status_code == 400
    data = resp.json()
    assert data["error"] == "error"
    assert data["code"] == "INVALID_SCHEMA"
    assert data["details"]
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_invalid_request_envelope(client):
    resp = await client.post(ENDPOINT, content=b"{oops", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_upstream_500_maps_to_llm_error():
    def handler(request):
        return httpx.Response(500, text="model crashed")

    backend = LlamaServerClient("http://llm.test", transport=httpx.MockTransport(handler))
    orch = ValidatedQueryOrchestrator(SchemaValidator(), backend)
    async with app_client(orch) as ac:
        resp = await ac.post(ENDPOINT, json=query_body())

    assert resp.status_code == 500
    assert resp.json()["code"] == "LLM_ERROR"


@pytest.mark.asyncio
async def test_end_to_end_with_llama_backend():
    def handler(request):
        content = '{"name":"John","age":25}'
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})

    backend = LlamaServerClient("http://llm.test", transport=httpx.MockTransport(handler))
    orch = ValidatedQueryOrchestrator(SchemaValidator(), backend)
    async with app_client(orch) as ac:
        resp = await ac.post(ENDPOINT, json=query_body())

    assert resp.status_code == 200
    assert resp.content == b'{"name":"John","age":25}'


@pytest.mark.asyncio
async def test_request_timeout_maps_to_timeout():
    orch = ValidatedQueryOrchestrator(SchemaValidator(), FakeDispatcher(delay=5.0))
    async with app_client(orch, request_timeout="50ms") as ac:
        resp = await ac.post(ENDPOINT, json=query_body())

    assert resp.status_code == 500
    assert resp.json()["code"] == "TIMEOUT"


@pytest.mark.asyncio
async def test_wrong_content_type_rejected(client, dispatcher):
    resp = await client.post(ENDPOINT, content=json.dumps(query_body()), headers={"Content-Type": "text/plain"})

    assert resp.status_code == 415
    assert resp.text == "Unsupported Media Type"
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_content_type_parameters_allowed(client):
    resp = await client.post(
        ENDPOINT,
        content=json.dumps(query_body()),
        headers={"Content-Type": "application/json; charset=utf-8"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_request_id_is_propagated(client):
    resp = await client.post(
        ENDPOINT,
        json=query_body(schema={"type": "invalid_type"}),
        headers={"X-Request-ID": "trace-123"},
    )
    assert resp.headers["x-request-id"] == "trace-123"
    assert resp.json()["request_id"] == "trace-123"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.text == "OK"
    assert resp.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_handler_crash_is_recovered():
    class Exploding:
        validator = SchemaValidator()

        async def handle(self, ctx, body):
            raise RuntimeError("kaboom")

    async with app_client(Exploding()) as ac:
        resp = await ac.post(ENDPOINT, json=query_body())
        assert resp.status_code == 500
        assert resp.json()["code"] == "INTERNAL_ERROR"

        health = await ac.get("/health")
        assert health.status_code == 200


@pytest.mark.asyncio
async def test_concurrent_distinct_schemas():
    k = 20

    def responder(messages, schema):
        # 按 schema 生成恰好符合它的输出
        doc = json.loads(schema)
        field = doc["required"][0]
        return json.dumps({field: doc["properties"][field]["const"]}).encode()

    validator = SchemaValidator(cache_size=100)
    orch = ValidatedQueryOrchestrator(validator, FakeDispatcher(responder=responder, delay=0.01))
    schemas = [
        {"type": "object", "properties": {f"field_{i}": {"const": i}}, "required": [f"field_{i}"]}
        for i in range(k)
    ]

    async with app_client(orch) as ac:
        responses = await asyncio.gather(*(ac.post(ENDPOINT, content=raw_body(s), headers=JSON) for s in schemas))

    for i, resp in enumerate(responses):
        assert resp.status_code == 200
        assert resp.json() == {f"field_{i}": i}

    assert validator.cache_size() == k
    for s in schemas:
        compiled, found = validator.cache.get(schema_fingerprint(schema_text(s)))
        assert found
        assert compiled.validator.schema == s
