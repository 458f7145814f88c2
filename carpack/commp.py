from __future__ import annotations

import os
from typing import BinaryIO, List, Tuple

from .cid import CID
from .constants import (
    CODEC_FIL_COMMITMENT_UNSEALED,
    FR32_PADDED_BLOCK,
    FR32_UNPADDED_BLOCK,
    MH_SHA2_256_TRUNC254_PADDED,
    MIN_PIECE_SIZE,
    NODE_SIZE,
)
from .hashutil import trunc254_parent

_MASK_254 = (1 << 254) - 1
_READ_BLOCKS = 8192


def padded_piece_size(unpadded_len: int) -> int:
    """Smallest power-of-two piece whose fr32 capacity holds ``unpadded_len`` bytes."""
    size = MIN_PIECE_SIZE
    while size // FR32_PADDED_BLOCK * FR32_UNPADDED_BLOCK < unpadded_len:
        size <<= 1
    return size


def fr32_expand(block127: bytes) -> bytes:
    """Spread 127 bytes (1016 bits) over four 32-byte nodes of 254 bits each."""
    if len(block127) != FR32_UNPADDED_BLOCK:
        raise ValueError("fr32 block must be 127 bytes")
    v = int.from_bytes(block127, "little")
    out = bytearray()
    for i in range(4):
        out += ((v >> (254 * i)) & _MASK_254).to_bytes(NODE_SIZE, "little")
    return bytes(out)


def zero_nodes(height: int) -> List[bytes]:
    """Roots of all-zero subtrees for levels 0..height."""
    zeros = [b"\x00" * NODE_SIZE]
    for _ in range(height):
        zeros.append(trunc254_parent(zeros[-1], zeros[-1]))
    return zeros


class _TreeBuilder:
    """Streaming binary Merkle builder; keeps one pending node per level."""

    def __init__(self) -> None:
        self._stack: List[Tuple[int, bytes]] = []

    def push(self, node: bytes, level: int = 0) -> None:
        while self._stack and self._stack[-1][0] == level:
            _, left = self._stack.pop()
            node = trunc254_parent(left, node)
            level += 1
        self._stack.append((level, node))

    def root(self, height: int, zeros: List[bytes]) -> bytes:
        if not self._stack:
            return zeros[height]
        # Right-pad with zero subtrees until a single node spans the piece.
        while not (len(self._stack) == 1 and self._stack[0][0] == height):
            level = self._stack[-1][0]
            self.push(zeros[level], level)
        return self._stack[0][1]


def piece_commitment(fh: BinaryIO, unpadded_len: int) -> Tuple[CID, int]:
    """Compute the piece CID and padded piece size for ``unpadded_len`` bytes of ``fh``."""
    piece_size = padded_piece_size(unpadded_len)
    height = (piece_size // NODE_SIZE).bit_length() - 1
    zeros = zero_nodes(height)
    builder = _TreeBuilder()
    remaining = unpadded_len
    pending = b""
    while remaining > 0:
        buf = fh.read(min(remaining, FR32_UNPADDED_BLOCK * _READ_BLOCKS))
        if not buf:
            raise ValueError("unexpected end of data while computing piece commitment")
        remaining -= len(buf)
        data = pending + buf
        usable = len(data) - len(data) % FR32_UNPADDED_BLOCK
        for i in range(0, usable, FR32_UNPADDED_BLOCK):
            expanded = fr32_expand(data[i : i + FR32_UNPADDED_BLOCK])
            for j in range(0, FR32_PADDED_BLOCK, NODE_SIZE):
                builder.push(expanded[j : j + NODE_SIZE])
        pending = data[usable:]
    if pending:
        expanded = fr32_expand(pending.ljust(FR32_UNPADDED_BLOCK, b"\x00"))
        for j in range(0, FR32_PADDED_BLOCK, NODE_SIZE):
            builder.push(expanded[j : j + NODE_SIZE])
    root = builder.root(height, zeros)
    cid = CID(codec=CODEC_FIL_COMMITMENT_UNSEALED, mh_code=MH_SHA2_256_TRUNC254_PADDED, digest=root)
    return cid, piece_size


def piece_commitment_of_file(path: str) -> Tuple[CID, int]:
    size = os.path.getsize(path)
    with open(path, "rb") as fh:
        return piece_commitment(fh, size)
