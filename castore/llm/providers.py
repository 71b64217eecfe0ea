from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Iterator, Mapping, Optional

from castore.config import DEFAULT_API_BASE, DEFAULT_API_KEY_ENV
from castore.errors import MissingCredentialError, UpstreamError
from castore.llm.sse import EventStreamDecoder, iter_content_fragments

READ_CHUNK_BYTES = 4096


class LLMProvider:
    def stream_chat(self, *, model: str, system_prompt: str, user_prompt: str) -> Iterator[str]:
        """Start a completion and return an iterator of text fragments in arrival order.

        Errors reported before the first byte of the body (credentials, HTTP
        status, connection) are raised by this call, not by the iterator.
        """

        raise NotImplementedError


def _iter_response_chunks(resp: Any, *, size: int = READ_CHUNK_BYTES) -> Iterator[bytes]:
    while True:
        try:
            chunk = resp.read1(size)
        except OSError as e:
            raise UpstreamError(status=None, body=f"stream interrupted: {e}") from e
        if not chunk:
            return
        yield chunk


class OpenRouterChatProvider(LLMProvider):
    def __init__(
        self,
        *,
        api_base: Optional[str] = None,
        api_key_env: str = DEFAULT_API_KEY_ENV,
        timeout_seconds: float = 120.0,
        environ: Optional[Mapping[str, str]] = None,
        urlopen: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._api_base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self._api_key_env = api_key_env
        self._timeout = float(timeout_seconds)
        self._environ = os.environ if environ is None else environ
        self._urlopen = urlopen or urllib.request.urlopen

    def _api_key(self) -> str:
        api_key = self._environ.get(self._api_key_env)
        if not api_key:
            raise MissingCredentialError(f"{self._api_key_env} environment variable not set")
        return api_key

    def stream_chat(self, *, model: str, system_prompt: str, user_prompt: str) -> Iterator[str]:
        api_key = self._api_key()

        payload: dict[str, Any] = {
            "model": model,
            "stream": True,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        req = urllib.request.Request(
            url=f"{self._api_base}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
            method="POST",
        )

        try:
            resp = self._urlopen(req, timeout=self._timeout)
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise UpstreamError(status=e.code, body=body) from e
        except OSError as e:
            raise UpstreamError(status=None, body=str(e)) from e

        return self._iter_fragments(resp)

    def _iter_fragments(self, resp: Any) -> Iterator[str]:
        with resp:
            decoder = EventStreamDecoder(_iter_response_chunks(resp))
            yield from iter_content_fragments(decoder)
