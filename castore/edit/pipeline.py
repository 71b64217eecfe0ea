from __future__ import annotations

from typing import Callable

from castore.errors import InvalidArgumentError
from castore.store.blob_store import BlobStore

TEXT_ENCODING = "utf-8"

Transform = Callable[[str], str]


def edit(store: BlobStore, digest: str, transform: Transform) -> str:
    """Read a blob, apply a text transform, and store the result under its new digest.

    The source blob is never touched. ``put`` runs only after ``transform``
    returns, so a failing transform leaves the store unchanged.
    """

    data = store.get(digest)
    try:
        text = data.decode(TEXT_ENCODING)
    except UnicodeDecodeError as e:
        raise InvalidArgumentError(f"{digest} is not valid {TEXT_ENCODING} text: {e}") from e

    new_text = transform(text)
    try:
        new_data = new_text.encode(TEXT_ENCODING)
    except UnicodeEncodeError as e:
        raise InvalidArgumentError(f"edited text is not encodable as {TEXT_ENCODING}: {e.reason} at position {e.start}") from e
    return store.put(new_data)
