"""
Chat backend client and per-turn stream orchestration
"""
import json
import time
from typing import AsyncGenerator, AsyncIterable, Optional

import httpx
import structlog

from askdocs.models.chat import (
    ChatMessage,
    ChatUpdate,
    EventKind,
    MessageRole,
    RenderedMessage,
)
from askdocs.services.config import Settings
from askdocs.services.files import unique_sources
from askdocs.services.history import HistoryStore
from askdocs.services.interpreter import EventInterpreter, format_sources_block, parse_sources
from askdocs.services.normalizer import MessageRenderer
from askdocs.services.stream_reader import Frame, iter_frames
from askdocs.utils.errors import NetworkError, StreamError
from askdocs.utils.metrics import track_citation, track_stream_completed, track_stream_failure

logger = structlog.get_logger()


class ChatTurn:
    """
    One question and its streamed answer.

    Owns its interpreter and assistant message; nothing is shared between
    turns. The message stays STREAMING until ``finalize`` and is frozen after.
    """

    def __init__(self, question: str, renderer: MessageRenderer, snapshot_every: int = 1):
        self.question = question
        self.user_message = ChatMessage.from_user(question)
        self.message = ChatMessage(role=MessageRole.ASSISTANT)
        self.interpreter = EventInterpreter()
        self.renderer = renderer
        self.snapshot_every = max(1, snapshot_every)
        self.started_at = time.monotonic()
        self.first_delta_at: Optional[float] = None

        self._cancelled = False
        self._text_frames = 0
        self._final: Optional[ChatUpdate] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop consuming at the next frame boundary"""
        if not self._cancelled:
            self._cancelled = True
            logger.warning(
                "Chat turn cancelled",
                message_id=self.message.id,
                characters=len(self.message.content)
            )

    def process(self, frame: Frame) -> Optional[ChatUpdate]:
        """Apply one frame; returns a live snapshot when one is due"""
        event = self.interpreter.apply(frame)
        if event is None:
            return None

        if event.text:
            self.message.append(event.text)
        if event.kind == EventKind.FINAL_METADATA and event.payload:
            self.message.add_sources(event.payload)

        if event.kind == EventKind.TEXT_DELTA and event.text:
            if self.first_delta_at is None:
                self.first_delta_at = time.monotonic()
            self._text_frames += 1
            if self._text_frames % self.snapshot_every:
                return None
        elif not event.text:
            return None

        return self.snapshot()

    async def consume(self, frames: AsyncIterable[Frame]) -> AsyncGenerator[ChatUpdate, None]:
        """Feed frames in arrival order, yielding live snapshots"""
        async for frame in frames:
            if self._cancelled:
                break
            update = self.process(frame)
            if update is not None:
                yield update

    def snapshot(self) -> ChatUpdate:
        """Render the display copy; the accumulated content is left as is"""
        return ChatUpdate(
            message=self.message.model_copy(deep=True),
            rendered=self.renderer.render(self.message.content)
        )

    def finalize(self, error_notice: Optional[str] = None, error: Optional[str] = None) -> ChatUpdate:
        """
        Freeze the message. Safe to call more than once.

        Args:
            error_notice: User-visible notice appended after the partial text
            error: Internal description kept on the message

        Returns:
            The final update, rendered once more from the complete text
        """
        if self._final is not None:
            return self._final

        event = self.interpreter.finish()
        if event is not None:
            self.message.append(event.text)
            self.message.add_sources(event.payload)

        if error_notice:
            separator = "\n\n" if self.message.content.strip() else ""
            self.message.append(separator + error_notice)
        self.message.error = error

        rendered = self.renderer.render(self.message.content)
        for citation in rendered.citations:
            track_citation(citation.pattern)

        self.message.sources = unique_sources(self.message.sources + rendered.sources)
        self.message.finalize()

        self._final = ChatUpdate(
            message=self.message.model_copy(deep=True),
            rendered=rendered,
            final=True
        )
        return self._final


class ChatClient:
    """Client for the chat backend"""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        history: Optional[HistoryStore] = None,
        renderer: Optional[MessageRenderer] = None
    ):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.REQUEST_TIMEOUT, read=settings.STREAM_TIMEOUT),
            limits=httpx.Limits(max_connections=settings.CONNECTION_POOL_SIZE)
        )
        self.history = history
        self.renderer = renderer or MessageRenderer(
            extensions=settings.DOCUMENT_EXTENSIONS,
            strip_provenance=settings.STRIP_PROVENANCE
        )

    def new_turn(self, question: str) -> ChatTurn:
        return ChatTurn(question, self.renderer, self.settings.SNAPSHOT_EVERY_N_FRAMES)

    def render(self, text: str, strip_provenance: Optional[bool] = None) -> RenderedMessage:
        return self.renderer.render(text, strip_provenance=strip_provenance)

    async def stream(
        self,
        question: str,
        top_k: Optional[int] = None,
        room_id: Optional[str] = None,
        turn: Optional[ChatTurn] = None
    ) -> AsyncGenerator[ChatUpdate, None]:
        """
        Ask the backend and yield live snapshots, then one final update.

        Network failures never escape: the partial answer is finalized with
        the configured error notice instead. Closing the generator early
        finalizes the partial answer without persisting it.
        """
        turn = turn or self.new_turn(question)
        top_k = top_k or self.settings.DEFAULT_TOP_K
        error: Optional[NetworkError] = None
        finished = False

        logger.info(
            "Starting chat stream",
            message_id=turn.message.id,
            question_length=len(question),
            top_k=top_k
        )

        try:
            async with self.http_client.stream(
                "POST",
                self.settings.get_chat_url(),
                params={"stream": "true"},
                json={"question": question, "topK": top_k},
                headers={"Accept": "text/event-stream"}
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise NetworkError(
                        f"Backend returned {response.status_code}: {body[:200].decode('utf-8', 'replace')}",
                        status_code=response.status_code
                    )

                async for update in turn.consume(iter_frames(response.aiter_bytes())):
                    yield update
            finished = True

        except NetworkError as e:
            error = e
        except httpx.HTTPError as e:
            error = NetworkError(f"Backend request failed: {e}")

        finally:
            if not finished and error is None:
                # Consumer went away or the task was cancelled
                turn.cancel()
                turn.finalize()
                track_stream_failure("cancelled")

        yield await self._complete_turn(turn, room_id, error)

    async def complete(
        self,
        question: str,
        top_k: Optional[int] = None,
        room_id: Optional[str] = None
    ) -> ChatUpdate:
        """Drain a streamed answer and return only the final update"""
        final = None
        async for update in self.stream(question, top_k=top_k, room_id=room_id):
            final = update
        return final

    async def ask(
        self,
        question: str,
        top_k: Optional[int] = None,
        room_id: Optional[str] = None
    ) -> ChatUpdate:
        """Non-streaming request: one JSON answer, same finalize semantics"""
        turn = self.new_turn(question)
        top_k = top_k or self.settings.DEFAULT_TOP_K
        error: Optional[NetworkError] = None

        try:
            response = await self.http_client.post(
                self.settings.get_chat_url(),
                json={"question": question, "topK": top_k},
                timeout=self.settings.REQUEST_TIMEOUT
            )
            if not response.is_success:
                raise NetworkError(
                    f"Backend returned {response.status_code}",
                    status_code=response.status_code
                )
            data = response.json()

        except NetworkError as e:
            error = e
        except httpx.HTTPError as e:
            error = NetworkError(f"Backend request failed: {e}")
        except json.JSONDecodeError as e:
            error = NetworkError(f"Backend returned invalid JSON: {e.msg}")

        if error is None:
            answer, sources = self._read_answer(data)
            turn.message.append(answer)
            if sources:
                turn.message.append(format_sources_block(sources))
                turn.message.add_sources(sources)

        return await self._complete_turn(turn, room_id, error)

    async def _complete_turn(
        self,
        turn: ChatTurn,
        room_id: Optional[str],
        error: Optional[NetworkError]
    ) -> ChatUpdate:
        notice = None
        reason = str(error) if error is not None else None
        if error is not None:
            logger.error(
                "Chat request failed",
                message_id=turn.message.id,
                error=str(error),
                status=error.status_code,
                partial_characters=len(turn.message.content)
            )
            track_stream_failure("stream" if isinstance(error, StreamError) else "network")
            notice = self.settings.ERROR_MESSAGE
        elif turn.interpreter.errors:
            track_stream_failure("backend")
            notice = self.settings.ERROR_MESSAGE
            reason = f"Backend error: {turn.interpreter.errors[0]}"

        final = turn.finalize(error_notice=notice, error=reason)

        first_delta = None
        if turn.first_delta_at is not None:
            first_delta = turn.first_delta_at - turn.started_at
        track_stream_completed(
            duration=time.monotonic() - turn.started_at,
            frames=turn.interpreter.frames_seen,
            characters=len(final.message.content),
            sources=len(final.message.sources),
            first_delta=first_delta
        )

        if self.history is not None and not turn.cancelled:
            try:
                room = await self.history.save_turn(room_id, turn.question, turn.message)
                final = final.model_copy(update={"room_id": room.id})
            except Exception as e:
                logger.error("Failed to save chat turn", room_id=room_id, error=str(e))

        return final

    @staticmethod
    def _read_answer(data):
        if isinstance(data, str):
            return data, []
        if not isinstance(data, dict):
            return "", []

        answer = ""
        for key in ("answer", "message", "response"):
            if isinstance(data.get(key), str):
                answer = data[key]
                break
        return answer, parse_sources(data.get("sources"))

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
