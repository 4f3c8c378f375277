import httpx
import pytest

from chat_core.domain.exceptions import StreamTransportError, ValidationError
from chat_core.domain.models import ChatSettings, ContextMessage, GenerationRequest
from chat_core.providers.http_transport import HttpStreamTransport


class SettingsStub:
    generation_base_url = "https://gen.example.com/v1/"
    generation_api_key = "k-123456"
    http_timeout = 1.0


def _request():
    return GenerationRequest(
        chat_id="c1",
        message_id="m-a",
        messages=[ContextMessage(role="system", content="sys"), ContextMessage(role="user", content="hi")],
        settings=ChatSettings(model="chat-small", temperature=0.2, top_k=None),
    )


def _fake_client(status_code=200, chunks=(), body=b"", captured=None, error=None):
    captured = captured if captured is not None else {}

    class Resp:
        def __init__(self):
            self.status_code = status_code

        async def aiter_bytes(self):
            for c in chunks:
                if isinstance(c, BaseException):
                    raise c
                yield c

        async def aread(self):
            return body

    class StreamCtx:
        async def __aenter__(self):
            if error is not None:
                raise error
            return Resp()

        async def __aexit__(self, *a):
            captured["stream_closed"] = True
            return False

    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            captured["client_closed"] = True
            return False

        def stream(self, method, url, json=None, headers=None):
            captured.update(method=method, url=url, payload=json, headers=headers)
            return StreamCtx()

    return Client


@pytest.mark.asyncio
async def test_open_stream_payload_and_chunks(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(chunks=[b'data: "a"\n', b'data: "b"\n'], captured=captured))
    source = await HttpStreamTransport(SettingsStub()).open_stream(_request())

    assert captured["method"] == "POST"
    assert captured["url"] == "https://gen.example.com/v1/chats/c1/generate"
    assert captured["headers"]["Authorization"] == "Bearer k-123456"
    assert captured["headers"]["Accept"] == "text/event-stream"
    payload = captured["payload"]
    assert payload["messageId"] == "m-a"
    assert payload["stream"] is True
    assert payload["model"] == "chat-small"
    assert payload["temperature"] == 0.2
    assert "top_k" not in payload
    assert payload["messages"][1] == {"role": "user", "content": "hi"}

    assert await source.read() == b'data: "a"\n'
    assert await source.read() == b'data: "b"\n'
    assert await source.read() == b""
    await source.aclose()
    assert captured["stream_closed"] and captured["client_closed"]


@pytest.mark.asyncio
async def test_open_stream_rate_limit(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(status_code=429, captured=captured))
    with pytest.raises(StreamTransportError) as exc:
        await HttpStreamTransport(SettingsStub()).open_stream(_request())
    assert exc.value.code == "RATE_LIMIT"
    assert captured["client_closed"]


@pytest.mark.asyncio
async def test_open_stream_api_error_message(monkeypatch):
    body = b'{"message": "model not found"}'
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(status_code=404, body=body))
    with pytest.raises(StreamTransportError) as exc:
        await HttpStreamTransport(SettingsStub()).open_stream(_request())
    assert exc.value.code == "API_ERROR"
    assert exc.value.message == "model not found"
    assert exc.value.http_status == 404


@pytest.mark.asyncio
async def test_open_stream_network_error(monkeypatch):
    error = httpx.ConnectError("connection refused")
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(error=error))
    with pytest.raises(StreamTransportError) as exc:
        await HttpStreamTransport(SettingsStub()).open_stream(_request())
    assert exc.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_read_error_mapped(monkeypatch):
    chunks = [b'data: "a"\n', httpx.ReadError("peer closed")]
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(chunks=chunks))
    source = await HttpStreamTransport(SettingsStub()).open_stream(_request())
    assert await source.read() == b'data: "a"\n'
    with pytest.raises(StreamTransportError):
        await source.read()
    await source.aclose()


@pytest.mark.asyncio
async def test_missing_base_url():
    class NoUrl(SettingsStub):
        generation_base_url = None

    with pytest.raises(ValidationError):
        await HttpStreamTransport(NoUrl()).open_stream(_request())
