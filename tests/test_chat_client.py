"""Tests for chat turn orchestration against a mocked backend."""

import json

import httpx
import pytest

from askdocs.models.chat import MessageState
from askdocs.services.chat_client import ChatTurn
from askdocs.services.stream_reader import Frame
from askdocs.utils.errors import MessageFinalizedError

from conftest import delta, sse, sse_response


def backend(body: bytes, status_code: int = 200, seen: list = None):
    """MockTransport handler serving one SSE body."""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return sse_response([body], status_code=status_code)
    return handler


async def collect(stream):
    return [update async for update in stream]


@pytest.mark.asyncio
async def test_end_to_end_stream(make_client, end_to_end_body):
    """Hel + lo + done sources yields Hello with a resolvable a.pdf reference."""
    seen = []
    client = make_client(backend(end_to_end_body, seen=seen))

    final = await client.complete("What is in a?")

    assert final.final
    assert final.message.state == MessageState.FINALIZED
    assert final.message.content.startswith("Hello")
    assert final.message.sources[0].file_name == "a.pdf"
    assert final.message.sources[0].line_number == 3
    assert final.rendered.citations[0].file_name == "a.pdf"
    assert final.rendered.citations[0].line_number == 3


@pytest.mark.asyncio
async def test_outbound_request(make_client, end_to_end_body):
    """Test method, path, query, body and headers sent to the backend."""
    seen = []
    client = make_client(backend(end_to_end_body, seen=seen))

    await client.complete("Question ?", top_k=5)

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/chat"
    assert request.url.params["stream"] == "true"
    assert request.headers["accept"] == "text/event-stream"
    assert json.loads(request.content) == {"question": "Question ?", "topK": 5}


@pytest.mark.asyncio
async def test_default_top_k(make_client, end_to_end_body):
    """Test topK when the caller gives none."""
    seen = []
    client = make_client(backend(end_to_end_body, seen=seen))
    await client.complete("Question ?")
    assert json.loads(seen[0].content)["topK"] == 3


@pytest.mark.asyncio
async def test_live_snapshots_grow_in_order(make_client, end_to_end_body):
    """Each text frame produces a snapshot of the growing answer."""
    client = make_client(backend(end_to_end_body))

    updates = await collect(client.stream("q"))

    assert [u.message.content for u in updates[:2]] == ["Hel", "Hello"]
    assert not any(u.final for u in updates[:-1])
    assert updates[-1].final
    assert updates[-2].message.content == updates[-1].message.content


@pytest.mark.asyncio
async def test_snapshot_interval(make_client):
    """Snapshots are rendered every N text frames."""
    body = (delta("a") + delta("b") + delta("c") + delta("d")).encode()
    client = make_client(backend(body), SNAPSHOT_EVERY_N_FRAMES=2)

    updates = await collect(client.stream("q"))

    assert [u.message.content for u in updates if not u.final] == ["ab", "abcd"]
    assert updates[-1].message.content == "abcd"


@pytest.mark.asyncio
async def test_malformed_frame_not_rendered(make_client):
    """A broken JSON frame is skipped and never shown."""
    body = (delta("ok ") + sse("{not valid json") + delta("done")).encode()
    client = make_client(backend(body))

    final = await client.complete("q")

    assert final.message.content == "ok done"
    assert "{not valid json" not in final.rendered.text


@pytest.mark.asyncio
async def test_non_ok_status_appends_notice(make_client, settings):
    """A non-2xx response finalizes with the fixed notice."""
    client = make_client(backend(b"upstream exploded", status_code=502))

    final = await client.complete("q")

    assert final.message.content == settings.ERROR_MESSAGE
    assert final.message.state == MessageState.FINALIZED
    assert "502" in final.message.error


@pytest.mark.asyncio
async def test_connection_failure_appends_notice(make_client, settings):
    """A refused connection never escapes as an exception."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    final = await client.complete("q")

    assert final.message.content == settings.ERROR_MESSAGE
    assert final.message.is_finalized


@pytest.mark.asyncio
async def test_read_failure_keeps_partial_text(make_client, settings):
    """A mid-stream read failure keeps the partial answer plus the notice."""
    async def broken_body():
        yield delta("Partial answer").encode()
        raise httpx.ReadError("connection reset")

    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=broken_body()
        )

    client = make_client(handler)
    final = await client.complete("q")

    assert final.message.content == f"Partial answer\n\n{settings.ERROR_MESSAGE}"
    assert final.message.is_finalized


@pytest.mark.asyncio
async def test_backend_error_frame_appends_notice(make_client, settings):
    """Test an error event from the backend."""
    body = (delta("Start") + sse('{"error":"model overloaded"}', event="error")).encode()
    client = make_client(backend(body))

    final = await client.complete("q")

    assert final.message.content == f"Start\n\n{settings.ERROR_MESSAGE}"
    assert final.message.error == "Backend error: model overloaded"


@pytest.mark.asyncio
async def test_malformed_frames_do_not_abort_stream(make_client, history):
    """Broken frames and unknown events are dropped and the turn is saved."""
    body = (
        delta("Hi")
        + sse("{not valid json")
        + sse("x", event="progress")
        + sse("{oops", event="done")
        + delta("!")
    ).encode()
    client = make_client(backend(body))

    updates = await collect(client.stream("q"))

    final = updates[-1]
    assert final.message.content == "Hi!"
    assert final.message.error is None
    assert final.room_id is not None
    assert (await history.get_room(final.room_id)).ai_answers[0].content == "Hi!"


@pytest.mark.asyncio
async def test_cancel_keeps_partial_text(make_client, history, end_to_end_body):
    """Cancelling stops at the next frame and finalizes what arrived."""
    client = make_client(backend(end_to_end_body))
    turn = client.new_turn("q")

    updates = []
    async for update in client.stream("q", turn=turn):
        updates.append(update)
        turn.cancel()

    assert updates[-1].final
    assert updates[-1].message.content == "Hel"
    assert turn.message.is_finalized
    assert await history.list_rooms() == []


@pytest.mark.asyncio
async def test_closing_generator_finalizes_partial(make_client, history, end_to_end_body):
    """A consumer that walks away leaves a finalized partial answer."""
    client = make_client(backend(end_to_end_body))
    turn = client.new_turn("q")

    stream = client.stream("q", turn=turn)
    first = await stream.__anext__()
    await stream.aclose()

    assert first.message.content == "Hel"
    assert turn.message.is_finalized
    assert turn.message.content == "Hel"
    assert await history.list_rooms() == []


@pytest.mark.asyncio
async def test_history_saved_after_finalize(make_client, history, end_to_end_body):
    """Finalized turns are appended to their room."""
    client = make_client(backend(end_to_end_body))

    first = await client.complete("First question")
    second = await client.complete("Second question", room_id=first.room_id)

    assert second.room_id == first.room_id
    room = await history.get_room(first.room_id)
    assert room.title == "First question"
    assert room.user_answers == ["First question", "Second question"]
    assert room.ai_answers[0].content == first.message.content
    assert room.ai_answers[0].sources[0].file_name == "a.pdf"


@pytest.mark.asyncio
async def test_ask_non_streaming(make_client):
    """Test the JSON answer path."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "answer": "Voir [Source: a.pdf, line 2].",
            "sources": [{"filename": "a.pdf", "line": 2, "score": 0.8}]
        })

    client = make_client(handler)
    final = await client.ask("q")

    assert "stream" not in seen[0].url.params
    assert final.message.content == "Voir [Source: a.pdf, line 2].\n\nSources:\n- a.pdf (line 2)"
    assert [s.file_name for s in final.message.sources] == ["a.pdf"]
    assert final.message.sources[0].relevance_score == 0.8


@pytest.mark.asyncio
async def test_ask_failure_appends_notice(make_client, settings):
    """Test a failing non-streaming request."""
    client = make_client(lambda request: httpx.Response(503, text="busy"))
    final = await client.ask("q")
    assert final.message.content == settings.ERROR_MESSAGE


def test_finalized_message_is_frozen(renderer):
    """No content can be added after finalize."""
    turn = ChatTurn("q", renderer)
    turn.process(Frame(data="partial"))
    final = turn.finalize()

    assert final.message.content == "partial"
    assert turn.finalize() is final
    with pytest.raises(MessageFinalizedError):
        turn.message.append("more")
