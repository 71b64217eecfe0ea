import unittest

from castore.errors import MissingCredentialError, UpstreamError
from castore.llm.providers import OpenRouterChatProvider

from tests.llm_test_server import SSE_DONE, FakeCompletionsBackend, run_completions_server, sse_event


class TestOpenRouterChatProvider(unittest.TestCase):
    def test_streams_fragments_in_order(self) -> None:
        backend = FakeCompletionsBackend(
            chunks=[b": OPENROUTER PROCESSING\n\n", sse_event("Hello"), sse_event(", wor"), sse_event("ld"), SSE_DONE],
            expected_api_key="sk-test",
        )
        with run_completions_server(backend=backend) as base_url:
            provider = OpenRouterChatProvider(
                api_base=base_url,
                environ={"OPENROUTER_API_KEY": "sk-test"},
                timeout_seconds=5,
            )
            fragments = list(
                provider.stream_chat(model="openai/gpt-4o-mini", system_prompt="Be brief.", user_prompt="Greet")
            )

        self.assertEqual(fragments, ["Hello", ", wor", "ld"])
        self.assertEqual(len(backend.requests), 1)
        req = backend.requests[0]
        self.assertEqual(req["model"], "openai/gpt-4o-mini")
        self.assertTrue(req["stream"])
        self.assertEqual(
            req["messages"],
            [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Greet"}],
        )
        self.assertEqual(backend.headers[0]["accept"], "text/event-stream")

    def test_event_split_across_writes(self) -> None:
        whole = sse_event("ünï") + sse_event("cödé") + SSE_DONE
        backend = FakeCompletionsBackend(chunks=[whole[i : i + 3] for i in range(0, len(whole), 3)])
        with run_completions_server(backend=backend) as base_url:
            provider = OpenRouterChatProvider(api_base=base_url, environ={"OPENROUTER_API_KEY": "k"}, timeout_seconds=5)
            text = "".join(provider.stream_chat(model="m", system_prompt="s", user_prompt="u"))
        self.assertEqual(text, "ünïcödé")

    def test_http_error_raises_before_streaming(self) -> None:
        backend = FakeCompletionsBackend(expected_api_key="right")
        with run_completions_server(backend=backend) as base_url:
            provider = OpenRouterChatProvider(api_base=base_url, environ={"OPENROUTER_API_KEY": "wrong"}, timeout_seconds=5)
            with self.assertRaises(UpstreamError) as cm:
                provider.stream_chat(model="m", system_prompt="s", user_prompt="u")
        self.assertEqual(cm.exception.status, 401)
        self.assertIn("No auth credentials found", str(cm.exception))

    def test_error_event_mid_stream(self) -> None:
        backend = FakeCompletionsBackend(
            chunks=[sse_event("partial"), b'data: {"error": {"code": 502, "message": "provider crashed"}}\n\n']
        )
        with run_completions_server(backend=backend) as base_url:
            provider = OpenRouterChatProvider(api_base=base_url, environ={"OPENROUTER_API_KEY": "k"}, timeout_seconds=5)
            frags = provider.stream_chat(model="m", system_prompt="s", user_prompt="u")
            self.assertEqual(next(frags), "partial")
            with self.assertRaises(UpstreamError):
                next(frags)

    def test_missing_key_fails_without_network(self) -> None:
        def no_network(*args, **kwargs):
            raise AssertionError("network must not be used")

        provider = OpenRouterChatProvider(environ={}, urlopen=no_network)
        with self.assertRaises(MissingCredentialError) as cm:
            provider.stream_chat(model="m", system_prompt="s", user_prompt="u")
        self.assertIn("OPENROUTER_API_KEY", str(cm.exception))

    def test_connection_failure_is_upstream_error(self) -> None:
        def refused(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        provider = OpenRouterChatProvider(environ={"OPENROUTER_API_KEY": "k"}, urlopen=refused)
        with self.assertRaises(UpstreamError) as cm:
            provider.stream_chat(model="m", system_prompt="s", user_prompt="u")
        self.assertIsNone(cm.exception.status)


if __name__ == "__main__":
    unittest.main()
