from __future__ import annotations

from pathlib import Path


try:
    from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile
except Exception as e:  # pragma: no cover
    raise RuntimeError("prometheus_client is required") from e


class CommandMetrics:
    """Per-invocation metrics, exported in the node-exporter textfile format."""

    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self.commands_total = Counter(
            "castore_commands_total",
            "Commands executed, by command and status.",
            labelnames=("command", "status"),
            registry=self.registry,
        )
        self.command_latency_ms = Histogram(
            "castore_command_latency_ms",
            "Command latency in milliseconds.",
            labelnames=("command",),
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000, 30000, 120000),
            registry=self.registry,
        )
        self.blob_bytes_written_total = Counter(
            "castore_blob_bytes_written_total",
            "Bytes handed to the blob store by put (including idempotent no-op puts).",
            registry=self.registry,
        )

    def observe_command(self, *, command: str, status: str, duration_ms: float) -> None:
        self.commands_total.labels(command=command, status=status).inc()
        self.command_latency_ms.labels(command=command).observe(duration_ms)

    def observe_put(self, *, size_bytes: int) -> None:
        self.blob_bytes_written_total.inc(size_bytes)

    def write_textfile(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
