"""
Incremental reader for the chat backend's event stream

Network chunking may split a frame, a line or a multi-byte UTF-8 sequence.
The reader keeps decoder state and a text buffer across reads so callers only
ever see complete frames.
"""
import codecs
import re
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from askdocs.utils.errors import StreamError

logger = structlog.get_logger()

FRAME_DELIMITER = "\n\n"
DONE_SENTINEL = "[DONE]"
DEFAULT_EVENT = "message"

# A trailing \r may be the first half of a \r\n still in flight
_LONE_CR = re.compile(r"\r(?!\Z)")


class Frame(BaseModel):
    """One complete event block"""
    model_config = ConfigDict(frozen=True)

    event: str = DEFAULT_EVENT
    data: str = ""
    id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


def parse_frame(block: str) -> Optional[Frame]:
    """
    Parse the ``field: value`` lines of one block.

    Only the single space conventionally following the colon is removed from
    a value; any other whitespace belongs to the text token. Multiple ``data``
    lines are joined with ``\\n``. Returns None for blocks holding only
    comments or unknown fields.
    """
    event = None
    frame_id = None
    data_lines = []

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            data_lines.append(value)
        elif field == "event":
            event = value.strip() or None
        elif field == "id":
            frame_id = value

    if not data_lines and event is None:
        return None

    return Frame(event=event or DEFAULT_EVENT, data="\n".join(data_lines), id=frame_id)


class SSEStreamReader:
    """
    Byte chunks in, complete frames out.

    Not restartable: after ``flush()`` the reader is closed and a new stream
    needs a new reader.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        """Text received but not yet terminated by a blank line"""
        return self._buffer

    def feed(self, chunk: bytes) -> List[Frame]:
        """Decode one network chunk and return the frames it completed"""
        if self._closed:
            raise ValueError("Reader already flushed")
        return self._push(self._decoder.decode(chunk))

    def flush(self) -> List[Frame]:
        """
        End of stream: drain the decoder and emit the trailing partial frame,
        if any, as a best-effort final frame.
        """
        if self._closed:
            return []

        frames = self._push(self._decoder.decode(b"", final=True))
        rest = self._buffer.replace("\r", "\n")
        self._buffer = ""
        self._closed = True

        if rest.strip():
            frame = parse_frame(rest)
            if frame is not None:
                frames.append(frame)
        return frames

    def _push(self, text: str) -> List[Frame]:
        if not text:
            return []

        previous_length = len(self._buffer)
        self._buffer += text
        if "\r" in self._buffer:
            self._buffer = _LONE_CR.sub("\n", self._buffer.replace("\r\n", "\n"))

        frames = []
        # Only the last two chars of the old buffer can start a new delimiter
        start = max(0, previous_length - 2)
        while True:
            index = self._buffer.find(FRAME_DELIMITER, start)
            if index == -1:
                break

            block = self._buffer[:index]
            self._buffer = self._buffer[index + len(FRAME_DELIMITER):]
            start = 0

            frame = parse_frame(block)
            if frame is not None:
                frames.append(frame)

        return frames


def read_frames(chunks: Iterable[bytes]) -> Iterator[Frame]:
    """Frames from an already available sequence of byte chunks"""
    reader = SSEStreamReader()
    for chunk in chunks:
        yield from reader.feed(chunk)
    yield from reader.flush()


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[Frame]:
    """
    Pull frames lazily from an async byte stream (e.g. ``response.aiter_bytes()``).

    A failing read raises StreamError and no further frames are produced.
    """
    reader = SSEStreamReader()
    try:
        async for chunk in chunks:
            for frame in reader.feed(chunk):
                yield frame
    except (httpx.TransportError, OSError) as e:
        logger.error(
            "Stream read failed",
            error=str(e),
            pending_chars=len(reader.pending)
        )
        raise StreamError(f"Stream read failed: {e}") from e

    for frame in reader.flush():
        yield frame
