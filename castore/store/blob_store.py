from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterator, Protocol

from castore.digest import digest as compute_digest
from castore.digest import is_digest
from castore.errors import IntegrityError, IOFailureError, NotFoundError

SHARD_WIDTH = 2


def shard_parts(digest: str) -> tuple[str, str]:
    """Split a digest into (shard directory, entry name)."""

    return digest[:SHARD_WIDTH], digest[SHARD_WIDTH:]


def _fsync_dir(path: Path) -> None:
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class BlobStore(Protocol):
    def put(self, data: bytes) -> str:
        raise NotImplementedError

    def get(self, digest: str) -> bytes:
        raise NotImplementedError

    def exists(self, digest: str) -> bool:
        raise NotImplementedError

    def iter_digests(self) -> Iterator[str]:
        raise NotImplementedError


class FileBlobStore:
    """Append-only, content-addressed blob store on a local filesystem.

    Blobs live at ``<root>/<digest[:2]>/<digest[2:]>``. A blob is written once,
    atomically, and never rewritten or removed.
    """

    def __init__(self, *, root: Path, verify_on_read: bool = True) -> None:
        self._root = root
        self._verify_on_read = verify_on_read

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, digest: str) -> Path:
        shard, name = shard_parts(digest)
        return self._root / shard / name

    def exists(self, digest: str) -> bool:
        return self.path_for(digest).is_file()

    def put(self, data: bytes) -> str:
        digest = compute_digest(data)
        path = self.path_for(digest)
        if path.is_file():
            return digest

        try:
            shard_created = not path.parent.is_dir()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write_atomic(path, data)
            # The rename (and a new shard entry) must be on disk before the audit row names it.
            _fsync_dir(path.parent)
            if shard_created:
                _fsync_dir(self._root)
        except OSError as e:
            raise IOFailureError(f"failed to write blob {digest}: {e}") from e
        return digest

    def _write_atomic(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name[:8]}.", suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def get(self, digest: str) -> bytes:
        path = self.path_for(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(digest) from None
        except OSError as e:
            raise IOFailureError(f"failed to read blob {digest}: {e}") from e

        if self._verify_on_read:
            actual = compute_digest(data)
            if actual != digest:
                raise IntegrityError(expected=digest, actual=actual)
        return data

    def iter_digests(self) -> Iterator[str]:
        if not self._root.is_dir():
            return
        for shard_dir in sorted(p for p in self._root.iterdir() if p.is_dir()):
            if len(shard_dir.name) != SHARD_WIDTH:
                continue
            for entry in sorted(shard_dir.iterdir()):
                name = shard_dir.name + entry.name
                if entry.is_file() and is_digest(name):
                    yield name
