import asyncio
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from query_core.api.app import create_app
from query_core.config.settings import Settings
from query_core.domain.models import ValidatedResponse
from query_core.flows.validated_query import ValidatedQueryOrchestrator
from query_core.schema.validator import SchemaValidator

PERSON_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "age": {"type": "integer"},
    },
    "required": ["name", "age"],
}

MESSAGES = [{"role": "user", "content": "Extract: John is 25 years old"}]


class FakeDispatcher:
    """测试替身：记录调用，可配置返回内容、异常与延迟。"""

    name = "fake"

    def __init__(self, payload: bytes = b"{}", error=None, delay: float = 0.0, responder=None):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.responder = responder
        self.calls = []
        self.cancelled = False

    async def send_structured_query(self, ctx, messages, schema):
        self.calls.append((ctx, messages, schema))
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            return ValidatedResponse(self.responder(messages, schema))
        return ValidatedResponse(self.payload)


def query_body(schema=PERSON_SCHEMA, messages=MESSAGES) -> dict:
    return {"schema": schema, "messages": messages}


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def dispatcher():
    return FakeDispatcher(payload=b'{"name":"John","age":25}')


@pytest.fixture
def validator():
    return SchemaValidator(cache_size=100)


@pytest.fixture
def orchestrator(validator, dispatcher):
    return ValidatedQueryOrchestrator(validator, dispatcher)


@pytest.fixture
def test_settings():
    return Settings(request_timeout=5, llm_server_url="http://llm.test", schema_cache_size=100)


@pytest_asyncio.fixture
async def client(orchestrator, test_settings):
    app = create_app(orchestrator=orchestrator, cfg=test_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
