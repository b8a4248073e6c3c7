"""Content hashing for regular files."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

_READ_BUF_SIZE = 1024 * 1024
DIGEST_LENGTH = hashlib.sha512().digest_size * 2


def hash_file(path: str | os.PathLike[str], *, preserve_atime: bool = False) -> str:
    """Return the SHA-512 hex digest of the file at ``path``.

    With ``preserve_atime`` the access time observed before reading is put back
    afterwards; the modification time is left as it is on disk.
    """

    path = Path(path)
    before = path.stat() if preserve_atime else None

    hasher = hashlib.sha512()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_READ_BUF_SIZE), b""):
            hasher.update(chunk)

    if before is not None:
        current = path.stat()
        os.utime(path, ns=(before.st_atime_ns, current.st_mtime_ns))

    return hasher.hexdigest()
