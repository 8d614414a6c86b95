"""
Frame boundary detection for streamed backend responses.

Both framers buffer raw bytes and only decode complete lines, so a frame
never ends inside a multi-byte UTF-8 sequence no matter how the transport
chunks the body.
"""
from dataclasses import dataclass
from typing import List, Optional, Union

from unillm.errors import DecodingError


@dataclass
class SseFrame:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


Frame = Union[SseFrame, str]


class LineBuffer:
    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        lines: List[str] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(_decode(raw))
        return lines

    def remainder(self) -> bytes:
        rest = bytes(self._buffer)
        self._buffer.clear()
        return rest

    @property
    def pending(self) -> int:
        return len(self._buffer)


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodingError(
            "stream frame is not valid UTF-8",
            raw=raw.decode("utf-8", errors="replace"),
        ) from exc


class JsonLinesFramer:
    """Newline-delimited JSON: one frame per non-empty line."""

    def __init__(self) -> None:
        self._lines = LineBuffer()

    def feed(self, chunk: bytes) -> List[Frame]:
        return [line for line in self._lines.feed(chunk) if line.strip()]

    def flush(self) -> List[Frame]:
        rest = self._lines.remainder()
        if not rest.strip():
            return []
        # A final line without a trailing newline is still a whole frame
        return [_decode(rest)]


class SseFramer:
    """
    Server-sent events. A frame is emitted on each blank line; `data:` lines
    are joined with newlines, comment lines (":") are skipped.
    """

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> List[Frame]:
        frames: List[Frame] = []
        for line in self._lines.feed(chunk):
            frame = self._consume(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[Frame]:
        rest = self._lines.remainder()
        if rest.strip():
            self._consume(_decode(rest))
        frame = self._dispatch()
        return [frame] if frame is not None else []

    def _consume(self, line: str) -> Optional[SseFrame]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[SseFrame]:
        if not self._data and self._event is None:
            return None
        frame = SseFrame(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        return frame
