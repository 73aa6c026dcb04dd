"""Line-oriented capture of supervised process output."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Literal

MAX_LOG_LINES = 2000
READ_CHUNK_SIZE = 4096

StreamName = Literal["stdout", "stderr"]
STREAM_NAMES: tuple[StreamName, ...] = ("stdout", "stderr")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LogBuffer:
    """Bounded log lines for one workspace plus the per-stream unterminated tails."""

    lines: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_LOG_LINES))
    partial: dict[str, str] = field(default_factory=lambda: {name: "" for name in STREAM_NAMES})
    # A chunk ending in "\r" may be the first half of "\r\n".
    pending_cr: dict[str, bool] = field(
        default_factory=lambda: {name: False for name in STREAM_NAMES}
    )


class LogCapture:
    """Owns the log buffers of every workspace it captures output for."""

    def __init__(self, max_lines: int = MAX_LOG_LINES) -> None:
        self._max_lines = max_lines
        self._buffers: dict[str, LogBuffer] = {}

    def _buffer(self, workspace_path: str) -> LogBuffer:
        buffer = self._buffers.get(workspace_path)
        if buffer is None:
            buffer = LogBuffer(lines=deque(maxlen=self._max_lines))
            self._buffers[workspace_path] = buffer
        return buffer

    def append(self, workspace_path: str, line: str) -> None:
        """Append a complete line, evicting the oldest once the buffer is full."""

        self._buffer(workspace_path).lines.append(line)

    def system(self, workspace_path: str, message: str) -> None:
        self.append(workspace_path, f"[system] {message}")

    def feed(self, workspace_path: str, stream_name: StreamName, text: str) -> None:
        """Merge ``text`` into the stream's partial line and flush completed lines."""

        if not text:
            return
        buffer = self._buffer(workspace_path)
        if buffer.pending_cr[stream_name]:
            buffer.pending_cr[stream_name] = False
            if text.startswith("\n"):
                text = text[1:]
        combined = buffer.partial[stream_name] + text

        if combined.endswith("\r"):
            combined = combined[:-1]
            buffer.pending_cr[stream_name] = True

        normalized = combined.replace("\r\n", "\n").replace("\r", "\n")
        *complete, tail = normalized.split("\n")
        for line in complete:
            buffer.lines.append(f"[{stream_name}] {line}")

        if buffer.pending_cr[stream_name]:
            # The held "\r" terminates ``tail`` whatever comes next.
            buffer.lines.append(f"[{stream_name}] {tail}")
            tail = ""
        buffer.partial[stream_name] = tail

    def finish(self, workspace_path: str, stream_name: StreamName) -> None:
        """Flush whatever non-blank fragment is left once a stream has ended."""

        buffer = self._buffer(workspace_path)
        buffer.pending_cr[stream_name] = False
        leftover = buffer.partial[stream_name]
        if leftover.strip():
            buffer.lines.append(f"[{stream_name}] {leftover.rstrip()}")
        buffer.partial[stream_name] = ""

    async def consume(
        self,
        workspace_path: str,
        reader: asyncio.StreamReader | None,
        stream_name: StreamName,
    ) -> None:
        """Read ``reader`` to completion, recording its lines. Never raises."""

        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.feed(workspace_path, stream_name, decoder.decode(chunk))
            self.feed(workspace_path, stream_name, decoder.decode(b"", final=True))
        except asyncio.CancelledError:
            logger.debug("Log capture cancelled", extra={"workspace": workspace_path})
        except Exception:  # best-effort capture
            logger.debug(
                "Log capture stopped on read error",
                extra={"workspace": workspace_path, "stream": stream_name},
                exc_info=True,
            )
        finally:
            self.finish(workspace_path, stream_name)

    def snapshot(self, workspace_path: str) -> tuple[list[str], dict[str, str]]:
        """Return copies of the buffered lines and partials."""

        buffer = self._buffers.get(workspace_path)
        if buffer is None:
            return [], {name: "" for name in STREAM_NAMES}
        return list(buffer.lines), dict(buffer.partial)

    def clear(self, workspace_path: str) -> None:
        self._buffers.pop(workspace_path, None)


__all__ = ["LogBuffer", "LogCapture", "MAX_LOG_LINES", "STREAM_NAMES", "StreamName"]
