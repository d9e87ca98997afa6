import pytest

from query_core.domain.exceptions import ErrorCode, InvalidRequestError, InvalidSchemaError
from query_core.domain.models import ValidatedQueryRequest


def test_schema_bytes_are_taken_verbatim_from_body():
    schema = b'{ "type": "number",\n  "maximum": 1e400, "minimum": 1.50 }'
    body = b'{"messages": [{"role": "user", "content": "hi"}], "schema" : ' + schema + b" }"

    req = ValidatedQueryRequest.decode(body)
    assert req.schema_bytes() == schema
    assert req.messages[0].content == "hi"


def test_schema_with_tricky_strings():
    schema = '{"description":"braces } { and \\"quotes\\" and 中文","type":"string"}'.encode("utf-8")
    body = b'{"schema":' + schema + b',"messages":[]}'

    assert ValidatedQueryRequest.decode(body).schema_bytes() == schema


def test_duplicate_schema_member_last_wins():
    body = b'{"schema":{"type":"string"},"schema":{"type":"integer"}}'
    req = ValidatedQueryRequest.decode(body)
    assert req.schema_bytes() == b'{"type":"integer"}'


@pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"messages":[]}', b'{"schema":{},"messages":{}}'])
def test_malformed_envelope(body):
    with pytest.raises(InvalidRequestError) as exc:
        ValidatedQueryRequest.decode(body)
    assert exc.value.code == ErrorCode.INVALID_REQUEST


def test_constructed_request_serializes_compactly():
    req = ValidatedQueryRequest(json_schema={"type": "object", "required": ["a"]})
    assert req.schema_bytes() == b'{"type":"object","required":["a"]}'


def test_constructed_request_rejects_non_finite_numbers():
    req = ValidatedQueryRequest(json_schema={"type": "number", "maximum": float("inf")})
    with pytest.raises(InvalidSchemaError):
        req.schema_bytes()
