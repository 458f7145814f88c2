from __future__ import annotations

"""
Content identifiers (CIDv1) and the unsigned varints they are built from.

Binary layout
- CID: varint(version=1) || varint(codec) || multihash
- Multihash: varint(hash code) || varint(digest length) || digest

Text form is multibase base32 (RFC 4648 alphabet, lower case, no padding)
prefixed with ``b``, e.g. ``bafkrei...`` for a raw sha2-256 block.
"""

import base64
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

from .constants import CID_VERSION, MH_SHA2_256
from .hashutil import sha256


def varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def varint_decode(data: bytes, pos: int = 0) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def read_varint(fh: BinaryIO) -> Optional[int]:
    """Read one varint from a stream; None on a clean EOF before the first byte."""
    shift = 0
    result = 0
    first = True
    while True:
        raw = fh.read(1)
        if not raw:
            if first:
                return None
            raise ValueError("varint: truncated")
        first = False
        b = raw[0]
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


@dataclass(frozen=True)
class CID:
    codec: int
    mh_code: int
    digest: bytes

    def to_bytes(self) -> bytes:
        return (
            varint_encode(CID_VERSION)
            + varint_encode(self.codec)
            + varint_encode(self.mh_code)
            + varint_encode(len(self.digest))
            + self.digest
        )

    def __str__(self) -> str:
        return "b" + base64.b32encode(self.to_bytes()).decode("ascii").lower().rstrip("=")

    @classmethod
    def decode(cls, data: bytes, pos: int = 0) -> Tuple["CID", int]:
        version, pos = varint_decode(data, pos)
        if version != CID_VERSION:
            raise ValueError(f"unsupported CID version {version}")
        codec, pos = varint_decode(data, pos)
        mh_code, pos = varint_decode(data, pos)
        ln, pos = varint_decode(data, pos)
        if pos + ln > len(data):
            raise ValueError("CID digest truncated")
        return cls(codec=codec, mh_code=mh_code, digest=bytes(data[pos : pos + ln])), pos + ln

    @classmethod
    def parse(cls, text: str) -> "CID":
        if not text.startswith("b"):
            raise ValueError(f"unsupported multibase prefix in {text!r}")
        body = text[1:].upper()
        body += "=" * (-len(body) % 8)
        raw = base64.b32decode(body)
        cid, end = cls.decode(raw)
        if end != len(raw):
            raise ValueError(f"trailing bytes after CID in {text!r}")
        return cid


def cid_for(data: bytes, codec: int) -> CID:
    return CID(codec=codec, mh_code=MH_SHA2_256, digest=sha256(data))
