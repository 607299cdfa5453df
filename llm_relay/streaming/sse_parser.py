"""
Incremental Server-Sent Events parser.

Bytes arrive in arbitrary pieces; only complete lines are interpreted and the
trailing partial line is kept until more bytes (or end of stream) arrive.
Decoding is incremental too, so a multi-byte UTF-8 character split across
chunks is reassembled rather than corrupted.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass


@dataclass(frozen=True)
class SSEFrame:
    """One dispatched event: the optional ``event:`` name and joined ``data:`` lines."""

    data: str
    event: str | None = None


class SSEParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self.comments_seen = 0

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        """Consume a chunk and return every frame it completed, in order."""
        self._buffer += self._decoder.decode(chunk)
        frames: list[SSEFrame] = []
        # Split on LF only and strip a trailing CR, so a CRLF split across
        # chunks can never produce a spurious blank line.
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            frame = self._process_line(line.removesuffix("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[SSEFrame]:
        """End of stream: interpret the leftover line and dispatch any pending frame."""
        self._buffer += self._decoder.decode(b"", final=True)
        frames: list[SSEFrame] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            frame = self._process_line(line.removesuffix("\r"))
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _process_line(self, line: str) -> SSEFrame | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            self.comments_seen += 1  # keep-alive
            return None
        if self._looks_like_bare_json(line):
            # Some OpenAI-compatible servers emit bare JSON lines without framing.
            self._data.append(line)
            return self._dispatch()
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        # "id", "retry" and unknown fields carry nothing the relay uses.
        return None

    @staticmethod
    def _looks_like_bare_json(line: str) -> bool:
        stripped = line.strip()
        return stripped.startswith("{") and stripped.endswith("}")

    def _dispatch(self) -> SSEFrame | None:
        if not self._data:
            self._event = None
            return None
        frame = SSEFrame(data="\n".join(self._data), event=self._event)
        self._data = []
        self._event = None
        return frame
