import unittest

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from castore.observability.tracing import current_trace_ids, record_span_outcome


class TestSpanOutcome(unittest.TestCase):
    def setUp(self) -> None:
        self.exporter = InMemorySpanExporter()
        self.provider = TracerProvider()
        self.provider.add_span_processor(SimpleSpanProcessor(self.exporter))
        self.tracer = self.provider.get_tracer("castore-test")

    def test_outcome_attributes_skip_missing_output(self) -> None:
        with self.tracer.start_as_current_span("casctl.read") as span:
            record_span_outcome(span, status="FAILED", exit_code=20)
            ids = current_trace_ids()

        (finished,) = self.exporter.get_finished_spans()
        self.assertEqual(finished.attributes["castore.status"], "FAILED")
        self.assertEqual(finished.attributes["castore.exit_code"], 20)
        self.assertNotIn("castore.output_name", finished.attributes)
        self.assertIsNotNone(ids)
        assert ids is not None
        self.assertEqual(ids.trace_id_hex, f"{finished.context.trace_id:032x}")

    def test_output_name_is_recorded(self) -> None:
        with self.tracer.start_as_current_span("casctl.write") as span:
            record_span_outcome(span, status="OK", exit_code=0, output_name="a" * 64)

        (finished,) = self.exporter.get_finished_spans()
        self.assertEqual(finished.attributes["castore.output_name"], "a" * 64)

    def test_no_trace_ids_outside_a_span(self) -> None:
        self.assertIsNone(current_trace_ids())


if __name__ == "__main__":
    unittest.main()
