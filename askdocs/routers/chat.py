"""
Chat endpoints: SSE relay of rendered answers, rendering and file links
"""
import json
import time
from typing import AsyncGenerator, Dict
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Query, Request
from sse_starlette.sse import EventSourceResponse
import structlog

from askdocs.models.chat import ChatRequest, ChatUpdate, RenderRequest
from askdocs.services.files import link_sources

logger = structlog.get_logger()

router = APIRouter(tags=["chat"])


def create_sse_message(data: dict) -> str:
    """Create SSE message - EventSourceResponse adds 'data: ' prefix automatically"""
    return json.dumps(data, ensure_ascii=False)


def _update_payload(request_id: str, update: ChatUpdate) -> Dict:
    rendered = update.rendered.model_dump(by_alias=True, mode="json")
    return {
        "id": request_id,
        "type": "text",
        "content": rendered["text"],
        "spans": rendered["spans"],
        "final": update.final
    }


@router.post("/chat")
async def chat_stream(request: ChatRequest, req: Request) -> EventSourceResponse:
    """
    Stream a backend answer as rendered snapshots
    """
    request_id = str(uuid4())
    app = req.app
    settings = app.state.settings
    chat_client = app.state.chat_client
    resolver = app.state.file_resolver

    logger.info(
        "Chat request received",
        request_id=request_id,
        question_length=len(request.question),
        room_id=request.room_id
    )

    async def generate_response() -> AsyncGenerator[str, None]:
        """Generate SSE stream"""
        turn = chat_client.new_turn(request.question)
        yield create_sse_message({
            "id": request_id,
            "type": "start",
            "metadata": {
                "timestamp": time.time(),
                "message_id": turn.message.id
            }
        })

        async for update in chat_client.stream(
            request.question,
            top_k=request.top_k,
            room_id=request.room_id,
            turn=turn
        ):
            yield create_sse_message(_update_payload(request_id, update))
            if not update.final:
                continue

            if update.message.sources:
                yield create_sse_message({
                    "id": request_id,
                    "type": "citation",
                    "citations": link_sources(update.message.sources, resolver)
                })

            if update.message.error:
                yield create_sse_message({
                    "id": request_id,
                    "type": "error",
                    "content": settings.ERROR_MESSAGE
                })

            yield create_sse_message({
                "id": request_id,
                "type": "done",
                "metadata": {
                    "message_id": update.message.id,
                    "room_id": update.room_id,
                    "state": update.message.state.value
                }
            })

    return EventSourceResponse(generate_response())


@router.post("/chat/ask")
async def chat_ask(request: ChatRequest, req: Request):
    """
    Non-streaming answer, rendered once
    """
    app = req.app
    update = await app.state.chat_client.ask(
        request.question,
        top_k=request.top_k,
        room_id=request.room_id
    )
    return {
        "message": update.message.model_dump(by_alias=True, mode="json"),
        "rendered": update.rendered.model_dump(by_alias=True, mode="json"),
        "citations": link_sources(update.message.sources, app.state.file_resolver),
        "roomId": update.room_id
    }


@router.post("/render")
async def render_text(request: RenderRequest, req: Request):
    """Render raw answer text into spans"""
    rendered = req.app.state.chat_client.render(
        request.text,
        strip_provenance=request.strip_provenance
    )
    return rendered.model_dump(by_alias=True, mode="json")


@router.get("/files/url")
async def file_url(req: Request, name: str = Query(..., min_length=1)):
    """Public URL for a cited file"""
    url = req.app.state.file_resolver.resolve(name)
    if url is None:
        raise HTTPException(status_code=400, detail="Invalid file name")
    return {"fileName": name.strip(), "url": url}


@router.get("/rooms/{room_id}")
async def get_room(room_id: str, req: Request):
    """Stored conversation history"""
    room = await req.app.state.history.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.model_dump(by_alias=True, mode="json")
