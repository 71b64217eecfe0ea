from __future__ import annotations

import codecs
import json
from collections import deque
from typing import Iterable, Iterator, Optional

from castore.errors import UpstreamError

DATA_FIELD = "data:"
DONE_SENTINEL = "[DONE]"


class EventStreamDecoder:
    """Pull-based line framing over an arbitrarily chunked byte stream.

    Bytes are decoded incrementally (a UTF-8 sequence may straddle two reads)
    into ``_partial``; every complete ``\\n``-terminated line moves to
    ``_ready``. :meth:`next_frame` returns one line at a time and ``None``
    once the transport is exhausted and all lines have been handed out.
    """

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._partial = ""
        self._ready: deque[str] = deque()
        self._exhausted = False

    def next_frame(self) -> Optional[str]:
        while not self._ready:
            if self._exhausted:
                return None
            self._pull()
        return self._ready.popleft()

    def __iter__(self) -> Iterator[str]:
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame

    def _pull(self) -> None:
        try:
            chunk = next(self._chunks)
        except StopIteration:
            self._exhausted = True
            self._partial += self._decode(b"", final=True)
            if self._partial:
                self._ready.append(_strip_cr(self._partial))
                self._partial = ""
            return

        self._partial += self._decode(chunk, final=False)
        *complete, self._partial = self._partial.split("\n")
        self._ready.extend(_strip_cr(line) for line in complete)

    def _decode(self, chunk: bytes, *, final: bool) -> str:
        try:
            return self._decoder.decode(chunk, final)
        except UnicodeDecodeError as e:
            raise UpstreamError(status=None, body=f"stream is not valid utf-8: {e}") from e


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


def iter_content_fragments(frames: Iterable[str]) -> Iterator[str]:
    """Yield ``choices[0].delta.content`` from chat-completion ``data:`` events until ``[DONE]``."""

    for line in frames:
        if not line.startswith(DATA_FIELD):
            # Blank separators, ": comment" keep-alives, and other fields carry no content.
            continue
        payload = line[len(DATA_FIELD) :]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload == DONE_SENTINEL:
            return

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise UpstreamError(status=None, body=f"malformed stream event: {payload[:200]}") from e
        if not isinstance(event, dict):
            raise UpstreamError(status=None, body=f"unexpected stream event: {payload[:200]}")

        error = event.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise UpstreamError(
                status=code if isinstance(code, int) else None,
                body=str(message or error),
            )

        choices = event.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            continue
        delta = choices[0].get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content
