from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_ABSENT = 1
EXIT_INVALID_ARGUMENT = 10
EXIT_NOT_FOUND = 20
EXIT_INDEX_OUT_OF_RANGE = 30
EXIT_UPSTREAM = 40
EXIT_IO_FAILURE = 60
EXIT_UNEXPECTED = 70


class CasError(RuntimeError):
    exit_code = EXIT_UNEXPECTED


class InvalidArgumentError(CasError):
    exit_code = EXIT_INVALID_ARGUMENT


class MissingCredentialError(InvalidArgumentError):
    pass


class NotFoundError(CasError):
    exit_code = EXIT_NOT_FOUND

    def __init__(self, digest: str) -> None:
        super().__init__(f"{digest} not found in CAS")
        self.digest = digest


class IndexOutOfRangeError(CasError):
    exit_code = EXIT_INDEX_OUT_OF_RANGE

    def __init__(self, *, line: int, low: int, high: int) -> None:
        super().__init__(f"line {line} out of range ({low}-{high})")
        self.line = line
        self.low = low
        self.high = high


class UpstreamError(CasError):
    exit_code = EXIT_UPSTREAM

    def __init__(self, *, status: Optional[int], body: str) -> None:
        if status is None:
            msg = f"upstream request failed: {body}"
        else:
            msg = f"upstream API error: {status} {body}"
        super().__init__(msg)
        self.status = status
        self.body = body


class IOFailureError(CasError):
    exit_code = EXIT_IO_FAILURE


class IntegrityError(IOFailureError):
    def __init__(self, *, expected: str, actual: str) -> None:
        super().__init__(f"integrity violation: blob {expected} re-hashes to {actual}")
        self.expected = expected
        self.actual = actual


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, CasError):
        return int(exc.exit_code)
    return EXIT_UNEXPECTED
