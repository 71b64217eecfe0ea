from __future__ import annotations

from castore.edit.pipeline import Transform
from castore.errors import IndexOutOfRangeError, InvalidArgumentError

LINE_SEPARATOR = "\n"


def _split_lines(text: str) -> list[str]:
    # "a\nb\n" -> ["a", "b", ""]; "" -> [""]. No CR normalization.
    return text.split(LINE_SEPARATOR)


def _join_lines(lines: list[str]) -> str:
    return LINE_SEPARATOR.join(lines)


def line_count(text: str) -> int:
    return len(_split_lines(text))


def _require_needle(old: str) -> None:
    if not old:
        raise InvalidArgumentError("search string must not be empty")


def replace_first(old: str, new: str) -> Transform:
    _require_needle(old)

    def _apply(text: str) -> str:
        return text.replace(old, new, 1)

    return _apply


def replace_all(old: str, new: str) -> Transform:
    _require_needle(old)

    def _apply(text: str) -> str:
        return text.replace(old, new)

    return _apply


def line_insert(line: int, new_line: str) -> Transform:
    """Insert ``new_line`` so that it becomes line ``line`` (1-indexed, up to count + 1)."""

    def _apply(text: str) -> str:
        lines = _split_lines(text)
        if line < 1 or line > len(lines) + 1:
            raise IndexOutOfRangeError(line=line, low=1, high=len(lines) + 1)
        lines.insert(line - 1, new_line)
        return _join_lines(lines)

    return _apply


def line_delete(line: int) -> Transform:
    def _apply(text: str) -> str:
        lines = _split_lines(text)
        if line < 1 or line > len(lines):
            raise IndexOutOfRangeError(line=line, low=1, high=len(lines))
        del lines[line - 1]
        return _join_lines(lines)

    return _apply


def line_replace(line: int, new_line: str) -> Transform:
    def _apply(text: str) -> str:
        lines = _split_lines(text)
        if line < 1 or line > len(lines):
            raise IndexOutOfRangeError(line=line, low=1, high=len(lines))
        lines[line - 1] = new_line
        return _join_lines(lines)

    return _apply


def append(suffix: str) -> Transform:
    def _apply(text: str) -> str:
        return text + suffix

    return _apply


def prepend(prefix: str) -> Transform:
    def _apply(text: str) -> str:
        return prefix + text

    return _apply
