from __future__ import annotations

from typing import BinaryIO, Iterable

from castore.edit.pipeline import TEXT_ENCODING
from castore.errors import UpstreamError
from castore.store.blob_store import BlobStore


def ingest_stream(store: BlobStore, fragments: Iterable[str], *, tee: BinaryIO) -> str:
    """Tee streamed text to ``tee`` as it arrives, then store the whole text as one blob.

    Nothing is written to the store until the stream completes. Non-empty text
    is stored newline-terminated.
    """

    parts: list[str] = []
    for fragment in fragments:
        try:
            encoded = fragment.encode(TEXT_ENCODING)
        except UnicodeEncodeError as e:
            raise UpstreamError(status=None, body=f"stream fragment is not encodable as {TEXT_ENCODING}: {e.reason}") from e
        parts.append(fragment)
        tee.write(encoded)
        tee.flush()

    text = "".join(parts)
    if text and not text.endswith("\n"):
        text += "\n"
        tee.write(b"\n")
        tee.flush()

    return store.put(text.encode(TEXT_ENCODING))
