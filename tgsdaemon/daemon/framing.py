"""Newline framing for the worker's stdout stream.

Pipe reads have no relation to record boundaries: one read may carry half a
record, several records, or a record plus the start of the next. The framer
buffers the unterminated tail and hands back only complete records.
"""

import codecs
from typing import List


class LineFramer:
    """
    Split a stream of text chunks into newline-terminated records.

    The buffer never holds more than one incomplete record. Blank records
    are returned as-is; filtering them is the caller's decision.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Buffered text that has not been terminated by a newline yet."""
        return self._buffer

    def feed(self, chunk: str) -> List[str]:
        """
        Append a chunk and return every record it completed.

        Args:
            chunk: Text as read from the stream (any length, any alignment)

        Returns:
            Complete records in arrival order, without their newline
        """
        if not chunk:
            return []

        parts = (self._buffer + chunk).split("\n")
        self._buffer = parts.pop()
        return parts

    def reset(self) -> None:
        """Drop any partial record (used when the stream is replaced)."""
        self._buffer = ""


class StreamDecoder:
    """
    Bytes-to-text stage in front of the framer.

    A multi-byte UTF-8 character can straddle two pipe reads, so decoding is
    incremental rather than per chunk.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.framer = LineFramer()

    def feed(self, data: bytes) -> List[str]:
        return self.framer.feed(self._decoder.decode(data))

    def reset(self) -> None:
        self._decoder.reset()
        self.framer.reset()
