"""
Event interpretation: frames in, one accumulated answer and its sources out
"""
import json
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from askdocs.models.chat import EventKind, SourceReference, StreamEvent
from askdocs.services.stream_reader import Frame
from askdocs.utils.errors import FrameParseError
from askdocs.utils.metrics import track_frame, track_parse_error

logger = structlog.get_logger()

SOURCES_HEADER = "Sources:"

FRAME_KINDS = ("message", "done", "error")


def format_sources_block(sources: List[SourceReference]) -> str:
    """
    Render sources as the block appended after the answer.

    The template is fixed (``- <fileName> (line <lineNumber>)``) so the
    citation extractor recognizes backend sources the same way it recognizes
    inline ones.
    """
    lines = [SOURCES_HEADER]
    for source in sources:
        name = " ".join(source.file_name.split())
        if source.line_number is not None:
            lines.append(f"- {name} (line {source.line_number})")
        else:
            lines.append(f"- {name}")
    return "\n\n" + "\n".join(lines)


def parse_sources(raw: Any) -> List[SourceReference]:
    """Convert a backend ``sources`` array, skipping unusable entries"""
    if not isinstance(raw, list):
        return []

    sources = []
    for entry in raw:
        if isinstance(entry, str):
            entry = {"fileName": entry}
        try:
            sources.append(SourceReference.model_validate(entry))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid source entry",
                entry=str(entry)[:100],
                errors=e.error_count()
            )
    return sources


def extract_delta(obj: Dict[str, Any]) -> str:
    """Text carried by a chat-completion delta (or a plain ``content`` field)"""
    choices = obj.get("choices")
    if isinstance(choices, list):
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""

    content = obj.get("content")
    return content if isinstance(content, str) else ""


def frame_kind(frame: Frame) -> str:
    """One of message, done, error or other"""
    kind = frame.event.strip().lower()
    return kind if kind in FRAME_KINDS else "other"


def _decode_object(payload: str) -> Dict[str, Any]:
    try:
        value = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"Malformed JSON payload: {e.msg}", payload=payload) from e

    if not isinstance(value, dict):
        raise FrameParseError("Expected a JSON object", payload=payload)
    return value


class EventInterpreter:
    """
    Accumulates one answer from the frames of one stream.

    Text is kept in strict arrival order, never reordered or de-duplicated.
    A frame that fails to decode contributes nothing and the stream goes on.
    """

    def __init__(self):
        self._parts: List[str] = []
        self._text: Optional[str] = ""
        self._sources: List[SourceReference] = []
        self._deferred_sources: List[SourceReference] = []
        self._finished = False
        self.errors: List[str] = []
        self.frames_seen = 0
        self.frames_dropped = 0

    @property
    def text(self) -> str:
        """The answer accumulated so far"""
        if self._text is None:
            self._text = "".join(self._parts)
        return self._text

    @property
    def sources(self) -> List[SourceReference]:
        return list(self._sources)

    def interpret(self, frame: Frame) -> Optional[StreamEvent]:
        """
        Classify a frame without touching the accumulation.

        Raises:
            FrameParseError: the payload looked like JSON but was not a JSON object
        """
        if frame.is_terminal:
            return None

        kind = frame_kind(frame)
        if kind == "message":
            return self._interpret_message(frame.data)
        if kind == "done":
            return self._interpret_done(frame.data)
        if kind == "error":
            return StreamEvent(kind=EventKind.ERROR_SIGNAL, payload=self._error_text(frame.data))

        logger.debug("Ignoring frame with unknown event", event_kind=frame.event)
        return None

    def apply(self, frame: Frame) -> Optional[StreamEvent]:
        """Interpret a frame and add its contribution to the answer"""
        if self._finished:
            raise ValueError("Interpreter already finished")

        self.frames_seen += 1
        track_frame(frame_kind(frame))

        try:
            event = self.interpret(frame)
        except FrameParseError as e:
            self.frames_dropped += 1
            track_parse_error()
            logger.warning(
                "Dropping malformed frame",
                event_kind=frame.event,
                error=str(e),
                payload_preview=e.payload[:80]
            )
            return None

        if event is None:
            return None

        if event.kind == EventKind.TEXT_DELTA:
            if event.payload:
                self._deferred_sources.extend(event.payload)
        elif event.kind == EventKind.FINAL_METADATA and event.payload:
            self._sources.extend(event.payload)
            self._deferred_sources.clear()
        elif event.kind == EventKind.ERROR_SIGNAL:
            self.errors.append(event.payload)
            logger.warning("Backend signalled an error", error=event.payload)

        self._append(event.text)
        return event

    def finish(self) -> Optional[StreamEvent]:
        """
        Close the accumulation.

        Sources that only arrived inside ``message`` frames are appended as a
        sources block here, unless a ``done`` frame already supplied sources.
        """
        if self._finished:
            return None
        self._finished = True

        if not self._deferred_sources or self._sources:
            return None

        sources = list(self._deferred_sources)
        self._deferred_sources.clear()
        self._sources.extend(sources)
        event = StreamEvent(
            kind=EventKind.FINAL_METADATA,
            payload=sources,
            text=format_sources_block(sources)
        )
        self._append(event.text)
        return event

    def _append(self, text: str) -> None:
        if text:
            self._parts.append(text)
            self._text = None

    def _interpret_message(self, data: str) -> Optional[StreamEvent]:
        stripped = data.strip()
        if stripped.startswith(("{", "[")):
            obj = _decode_object(stripped)
            text = extract_delta(obj)
            sources = parse_sources(obj.get("sources"))
            if not text and not sources:
                return None
            return StreamEvent(kind=EventKind.TEXT_DELTA, payload=sources, text=text)

        if not data:
            return None
        # Raw token: whitespace is part of the text
        return StreamEvent(kind=EventKind.TEXT_DELTA, text=data)

    def _interpret_done(self, data: str) -> StreamEvent:
        stripped = data.strip()
        if not stripped:
            return StreamEvent(kind=EventKind.FINAL_METADATA, payload=[])

        obj = _decode_object(stripped)
        sources = parse_sources(obj.get("sources"))
        return StreamEvent(
            kind=EventKind.FINAL_METADATA,
            payload=sources,
            text=format_sources_block(sources) if sources else ""
        )

    @staticmethod
    def _error_text(data: str) -> str:
        stripped = data.strip()
        if stripped.startswith("{"):
            try:
                obj = json.loads(stripped)
            except json.JSONDecodeError:
                obj = None
            if isinstance(obj, dict):
                for key in ("error", "message", "content", "detail"):
                    if isinstance(obj.get(key), str) and obj[key].strip():
                        return obj[key].strip()
        return stripped or "Backend reported an error"
