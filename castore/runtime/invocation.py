from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Optional, Sequence, TextIO

from castore.audit.log import AuditLog
from castore.audit.record import Failure, Outcome, Success, storable_text
from castore.config import CastoreConfig
from castore.errors import EXIT_OK, InvalidArgumentError, exit_code_for
from castore.llm.providers import LLMProvider
from castore.observability.events import FileEventLogger, build_command_event
from castore.observability.metrics import CommandMetrics
from castore.observability.tracing import command_span, record_span_outcome
from castore.runtime.wiring import MeteredBlobStore, open_blob_store
from castore.store.blob_store import BlobStore


@dataclass(frozen=True)
class Console:
    stdin: BinaryIO
    stdout: BinaryIO
    stderr: TextIO

    def emit_line(self, text: str) -> None:
        self.stdout.write((text + "\n").encode("utf-8"))
        self.stdout.flush()


@dataclass(frozen=True)
class CommandContext:
    config: CastoreConfig
    store: BlobStore
    audit_log: AuditLog
    console: Console
    provider_factory: Callable[[], LLMProvider]


@dataclass(frozen=True)
class CommandResult:
    output_name: Optional[str] = None
    exit_code: int = EXIT_OK


Handler = Callable[[CommandContext, list[str]], CommandResult]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    usage: str
    summary: str
    handler: Handler
    min_args: int
    max_args: int

    def check_arity(self, args: Sequence[str]) -> None:
        if self.min_args <= len(args) <= self.max_args:
            return
        raise InvalidArgumentError(f"{self.name} requires: {self.usage}".rstrip())


def _failure_message(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        message = type(exc).__name__
    # One line on the diagnostic stream and in the audit row.
    return " ".join(message.splitlines())


def run_invocation(
    *,
    command: str,
    args: Sequence[str],
    commands: Mapping[str, CommandSpec],
    config: CastoreConfig,
    audit_log: AuditLog,
    console: Console,
    provider_factory: Callable[[], LLMProvider],
) -> int:
    """Run one command and record exactly one audit row for it.

    Every exception raised by the command is turned into a ``Failure`` outcome
    and an exit code here. The audit row is written after the command's own
    effects, and a failure to write it is reported without changing the exit
    code.
    """

    args = list(args)
    command_label = storable_text(command)
    metrics = CommandMetrics()
    started_at = datetime.now(timezone.utc)
    started = time.monotonic()

    with command_span(
        command_label,
        arg_count=len(args),
        store_backend=config.store.backend,
        audit_backend=config.audit.backend,
    ) as span:
        outcome: Outcome
        try:
            spec = commands.get(command)
            if spec is None:
                raise InvalidArgumentError(f"Unknown command: {command}")
            spec.check_arity(args)
            store = MeteredBlobStore(open_blob_store(config), metrics=metrics)
            ctx = CommandContext(
                config=config,
                store=store,
                audit_log=audit_log,
                console=console,
                provider_factory=provider_factory,
            )
            result = spec.handler(ctx, args)
            outcome = Success(output_name=result.output_name)
            exit_code = result.exit_code
        except Exception as e:
            message = _failure_message(e)
            console.stderr.write(f"Error: {message}\n")
            console.stderr.flush()
            outcome = Failure(message=message)
            exit_code = exit_code_for(e)

        try:
            audit_log.record(command, args, outcome)
        except Exception as e:
            console.stderr.write(f"Warning: audit log write failed: {_failure_message(e)}\n")
            console.stderr.flush()

        status = "OK" if isinstance(outcome, Success) else "FAILED"
        record_span_outcome(
            span,
            status=status,
            exit_code=exit_code,
            output_name=outcome.output_name if isinstance(outcome, Success) else None,
        )
        duration_ms = (time.monotonic() - started) * 1000.0
        _emit_observability(
            config=config,
            console=console,
            metrics=metrics,
            command=command_label,
            status=status,
            exit_code=exit_code,
            started_at=started_at,
            duration_ms=duration_ms,
            outcome=outcome,
        )

    return exit_code


def _emit_observability(
    *,
    config: CastoreConfig,
    console: Console,
    metrics: CommandMetrics,
    command: str,
    status: str,
    exit_code: int,
    started_at: datetime,
    duration_ms: float,
    outcome: Outcome,
) -> None:
    obs = config.observability
    metrics.observe_command(command=command, status=status, duration_ms=duration_ms)
    try:
        if obs.events_path:
            fields = {}
            if isinstance(outcome, Success) and outcome.output_name:
                fields["output_name"] = outcome.output_name
            if isinstance(outcome, Failure):
                fields["error_message"] = storable_text(outcome.message)
            event = build_command_event(
                command=command,
                occurred_at=started_at,
                duration_ms=int(duration_ms),
                status=status,
                exit_code=exit_code,
                config_path=config.config_path,
                config_sha256=config.config_sha256,
                fields=fields,
            )
            FileEventLogger(path=Path(obs.events_path)).append(event)
        if obs.metrics_textfile:
            metrics.write_textfile(Path(obs.metrics_textfile))
    except Exception as e:
        console.stderr.write(f"Warning: observability export failed: {_failure_message(e)}\n")
        console.stderr.flush()
