#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import re
import sys
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Optional, TextIO

import yaml

from castore.audit.log import open_audit_log
from castore.audit.verify import verify_audit_records
from castore.config import CastoreConfig, apply_overrides, load_config
from castore.digest import digest as compute_digest
from castore.digest import normalize_digest
from castore.edit import transforms
from castore.edit.pipeline import Transform, edit
from castore.errors import EXIT_ABSENT, EXIT_INVALID_ARGUMENT, CasError, IntegrityError, InvalidArgumentError, IOFailureError
from castore.llm.ingest import ingest_stream
from castore.llm.providers import LLMProvider
from castore.observability.tracing import init_tracing
from castore.runtime.invocation import CommandContext, CommandResult, CommandSpec, Console, run_invocation
from castore.runtime.wiring import build_llm_provider
from castore.version import CASTORE_VERSION

_LINE_NUMBER_RE = re.compile(r"^[+-]?[0-9]+$")
_LIMIT_RE = re.compile(r"^[0-9]+$")


def _parse_line_number(value: str) -> int:
    if _LINE_NUMBER_RE.match(value.strip()) is None:
        raise InvalidArgumentError(f"line number must be an integer: {value!r}")
    return int(value)


def cmd_write(ctx: CommandContext, args: list[str]) -> CommandResult:
    source = args[0]
    if source == "-":
        data = ctx.console.stdin.read()
    else:
        try:
            data = Path(source).read_bytes()
        except OSError as e:
            raise IOFailureError(f"failed to read {source}: {e}") from e

    digest = ctx.store.put(data)
    ctx.console.emit_line(digest)
    return CommandResult(output_name=digest)


def cmd_read(ctx: CommandContext, args: list[str]) -> CommandResult:
    data = ctx.store.get(normalize_digest(args[0]))
    ctx.console.stdout.write(data)
    ctx.console.stdout.flush()
    return CommandResult()


def _run_edit(ctx: CommandContext, digest_arg: str, transform: Transform) -> CommandResult:
    new_digest = edit(ctx.store, normalize_digest(digest_arg), transform)
    ctx.console.emit_line(new_digest)
    return CommandResult(output_name=new_digest)


def cmd_replace(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.replace_first(args[1], args[2]))


def cmd_replace_all(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.replace_all(args[1], args[2]))


def cmd_line_insert(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.line_insert(_parse_line_number(args[1]), args[2]))


def cmd_line_delete(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.line_delete(_parse_line_number(args[1])))


def cmd_line_replace(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.line_replace(_parse_line_number(args[1]), args[2]))


def cmd_append(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.append(args[1]))


def cmd_prepend(ctx: CommandContext, args: list[str]) -> CommandResult:
    return _run_edit(ctx, args[0], transforms.prepend(args[1]))


def cmd_llm(ctx: CommandContext, args: list[str]) -> CommandResult:
    model, system_prompt, user_prompt = args
    provider = ctx.provider_factory()
    fragments = provider.stream_chat(model=model, system_prompt=system_prompt, user_prompt=user_prompt)
    digest = ingest_stream(ctx.store, fragments, tee=ctx.console.stdout)
    ctx.console.stderr.write(f"{digest}\n")
    ctx.console.stderr.flush()
    return CommandResult(output_name=digest)


def cmd_exists(ctx: CommandContext, args: list[str]) -> CommandResult:
    present = ctx.store.exists(normalize_digest(args[0]))
    ctx.console.emit_line("true" if present else "false")
    return CommandResult(exit_code=0 if present else EXIT_ABSENT)


def cmd_fsck(ctx: CommandContext, args: list[str]) -> CommandResult:
    total = 0
    corrupt: list[str] = []
    for digest in ctx.store.iter_digests():
        total += 1
        try:
            data = ctx.store.get(digest)
        except IntegrityError:
            corrupt.append(digest)
            continue
        if compute_digest(data) != digest:
            corrupt.append(digest)

    if corrupt:
        for digest in corrupt:
            ctx.console.emit_line(f"CORRUPT: {digest}")
        raise IOFailureError(f"fsck found {len(corrupt)} corrupt blob(s) out of {total}")

    ctx.console.emit_line(f"FSCK_OK: blobs={total}")
    return CommandResult()


def cmd_log(ctx: CommandContext, args: list[str]) -> CommandResult:
    limit: Optional[int] = None
    if args:
        if _LIMIT_RE.match(args[0]) is None or int(args[0]) < 1:
            raise InvalidArgumentError(f"limit must be a positive integer: {args[0]!r}")
        limit = int(args[0])
    for rec in ctx.audit_log.records(limit=limit):
        ctx.console.emit_line(json.dumps(rec.to_dict(), ensure_ascii=False, sort_keys=True))
    return CommandResult()


def cmd_audit_verify(ctx: CommandContext, args: list[str]) -> CommandResult:
    result = verify_audit_records(ctx.audit_log.records())
    if not result.ok:
        ctx.console.emit_line("AUDIT_VERIFY_FAILED")
        for err in result.errors[:200]:
            ctx.console.emit_line(err)
        raise IOFailureError(f"audit verification failed: {len(result.errors)} error(s)")

    ctx.console.emit_line(f"AUDIT_VERIFY_OK: records={result.records_checked}")
    return CommandResult()


def cmd_version(ctx: CommandContext, args: list[str]) -> CommandResult:
    ctx.console.emit_line(CASTORE_VERSION)
    return CommandResult()


def _spec(name: str, usage: str, summary: str, handler, min_args: int, max_args: Optional[int] = None) -> CommandSpec:
    return CommandSpec(
        name=name,
        usage=usage,
        summary=summary,
        handler=handler,
        min_args=min_args,
        max_args=min_args if max_args is None else max_args,
    )


COMMANDS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        _spec("write", "(- | <path>)", "Store stdin or a file; print its digest.", cmd_write, 1),
        _spec("read", "<digest>", "Write a blob to stdout.", cmd_read, 1),
        _spec("replace", "<digest> <old> <new>", "Replace the first occurrence.", cmd_replace, 3),
        _spec("replace-all", "<digest> <old> <new>", "Replace all occurrences.", cmd_replace_all, 3),
        _spec("line-insert", "<digest> <n> <text>", "Insert a line at position n (1-indexed).", cmd_line_insert, 3),
        _spec("line-delete", "<digest> <n>", "Delete line n (1-indexed).", cmd_line_delete, 2),
        _spec("line-replace", "<digest> <n> <text>", "Replace line n (1-indexed).", cmd_line_replace, 3),
        _spec("append", "<digest> <text>", "Append text to the end.", cmd_append, 2),
        _spec("prepend", "<digest> <text>", "Prepend text to the beginning.", cmd_prepend, 2),
        _spec("llm", "<model> <system> <prompt>", "Stream a completion to stdout and store it.", cmd_llm, 3),
        _spec("exists", "<digest>", "Print whether a blob is stored (exit 1 if absent).", cmd_exists, 1),
        _spec("fsck", "", "Re-hash every blob and report corrupt ones.", cmd_fsck, 0),
        _spec("log", "[limit]", "Print audit records as JSON lines.", cmd_log, 0, 1),
        _spec("audit-verify", "", "Verify the audit log schema and hash chain.", cmd_audit_verify, 0),
        _spec("version", "", "Print the version.", cmd_version, 0),
    )
}


def _commands_epilog() -> str:
    lines = ["commands:"]
    for spec in COMMANDS.values():
        lines.append(f"  {(spec.name + ' ' + spec.usage).strip():<38} {spec.summary}")
    lines.append("")
    lines.append("Edit commands never modify the source blob; they print the digest of the result.")
    return "\n".join(lines)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="casctl",
        description="Content-addressable blob store with an append-only audit log.",
        epilog=_commands_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--root", default=None, help="Store root directory (defaults to CASTORE_ROOT, then config).")
    parser.add_argument("--config", default=None, help="YAML config file (defaults to CASTORE_CONFIG).")
    parser.add_argument("command", help="Command to run (see below).")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Command arguments, taken verbatim.")
    return parser


def _load_config(*, config_arg: Optional[str], root_arg: Optional[str], environ: Mapping[str, str]) -> CastoreConfig:
    config_path = config_arg or environ.get("CASTORE_CONFIG")
    cfg = load_config(path=Path(config_path) if config_path else None)
    return apply_overrides(cfg, root=root_arg, environ=environ)


def main(
    argv: list[str] | None = None,
    *,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
    stderr: Optional[TextIO] = None,
    environ: Optional[Mapping[str, str]] = None,
    provider_factory: Optional[Callable[[CastoreConfig], LLMProvider]] = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    console = Console(
        stdin=stdin if stdin is not None else sys.stdin.buffer,
        stdout=stdout if stdout is not None else sys.stdout.buffer,
        stderr=stderr if stderr is not None else sys.stderr,
    )
    env = os.environ if environ is None else environ

    try:
        config = _load_config(config_arg=args.config, root_arg=args.root, environ=env)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.stderr.write(f"Error: invalid config: {e}\n")
        return EXIT_INVALID_ARGUMENT

    init_tracing(enabled=config.observability.tracing_enabled, service_name="casctl")

    def factory() -> LLMProvider:
        if provider_factory is None:
            return build_llm_provider(config, environ=env)
        return provider_factory(config)

    try:
        audit_log = open_audit_log(config)
    except CasError as e:
        console.stderr.write(f"Error: {e}\n")
        return e.exit_code

    with audit_log:
        return run_invocation(
            command=args.command,
            args=args.args,
            commands=COMMANDS,
            config=config,
            audit_log=audit_log,
            console=console,
            provider_factory=factory,
        )


if __name__ == "__main__":
    raise SystemExit(main())
