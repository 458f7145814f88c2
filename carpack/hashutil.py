from __future__ import annotations

import hashlib

_READ_SIZE = 1 << 20


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def md5sum(path: str) -> str:
    """Hex MD5 of a file's content, read in 1 MiB blocks.

    Raises OSError when the path cannot be opened or read.
    """
    h = hashlib.md5()
    with open(path, "rb") as fh:
        while True:
            buf = fh.read(_READ_SIZE)
            if not buf:
                break
            h.update(buf)
    return h.hexdigest()


def trunc254_parent(left32: bytes, right32: bytes) -> bytes:
    """Piece-tree parent: sha256 with the two top bits of the last byte cleared."""
    d = bytearray(hashlib.sha256(left32 + right32).digest())
    d[31] &= 0x3F
    return bytes(d)
