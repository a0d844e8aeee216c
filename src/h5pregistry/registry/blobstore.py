"""Blob store collaborator.

The registry only stores and fetches opaque bytes by key; it never interprets
blob contents beyond what a manifest declares. Refs returned by put_blob are
the keys themselves for the filesystem implementation.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobNotFound(KeyError):
    """Raised when a blob ref does not exist."""


class BlobStore(Protocol):
    """Interface the registry consumes for asset bytes."""

    def put_blob(self, key: str, data: bytes) -> str: ...

    def get_blob(self, ref: str) -> bytes: ...

    def delete_blob(self, ref: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def exists(self, ref: str) -> bool: ...


def library_root_key(name: str, version: str, content_hash: str) -> str:
    """Extracted-asset root for one library version.

    The content hash is part of the key so a replacement never overwrites the
    files of the version it replaces.
    """
    return f"libraries/{name}-{version}-{content_hash[:16]}"


def archive_key(sha256: str) -> str:
    """Key for an original archive, addressed by its own hash."""
    return f"archives/{sha256}.h5p"


class LocalBlobStore:
    """Filesystem blob store rooted at a directory.

    Usage:
        blobs = LocalBlobStore(Path("~/.h5pregistry/blobs").expanduser())
        ref = blobs.put_blob("libraries/H5P.Foo-1.0.0/library.json", data)
        blobs.get_blob(ref)
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts or "\\" in key:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*parts)

    def put_blob(self, key: str, data: bytes) -> str:
        """Write bytes atomically (temp file + rename)."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return key

    def get_blob(self, ref: str) -> bytes:
        path = self._path(ref)
        if not path.is_file():
            raise BlobNotFound(ref)
        return path.read_bytes()

    def exists(self, ref: str) -> bool:
        return self._path(ref).is_file()

    def delete_blob(self, ref: str) -> None:
        self._path(ref).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        """Delete every blob under a key prefix; returns files removed."""
        path = self._path(prefix)
        if path.is_file():
            path.unlink()
            return 1
        if not path.is_dir():
            return 0
        count = sum(1 for p in path.rglob("*") if p.is_file())
        shutil.rmtree(path)
        logger.debug(f"Deleted {count} blobs under {prefix}")
        return count
