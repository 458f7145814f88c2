from __future__ import annotations

"""
Minimal CAR v1 writer/reader for carpack slices.

Layout
- varint(header_len) || header (dag-cbor: {"roots": [root], "version": 1})
- then sections: varint(len(cid) + len(data)) || cid || data

DAG stored in a slice
- leaves: raw blocks (codec 0x55) of at most chunk_size bytes
- file node (dag-json): {"Chunks": [{"/": cid}, ...], "Size": n}
  split pieces add "Offset" (byte position in the source file) and
  "FileSize" (size of the whole source file)
- directory node (dag-json): {"Link": [{"Hash": {"/": cid}, "Name": str, "Size": n}, ...]}
- the root is the top directory node; its CID is the payload CID
"""

import json
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Set

from .cid import CID, cid_for, read_varint, varint_encode
from .constants import CAR_VERSION, CODEC_DAG_JSON, CODEC_RAW, MH_SHA2_256
from .errors import BlockNotFoundError, CarFormatError
from .hashutil import sha256
from .pathutil import norm_path

# dag-cbor header pieces around the single root link (tag 42, identity multibase prefix)
_HEADER_PREFIX = b"\xa2" + b"\x65roots" + b"\x81" + b"\xd8\x2a"
_HEADER_SUFFIX = b"\x67version" + bytes([CAR_VERSION])
_PLACEHOLDER_ROOT = CID(codec=CODEC_DAG_JSON, mh_code=MH_SHA2_256, digest=b"\x00" * 32)
_CID_PEEK = 64

KIND_FILE = 0
KIND_DIR = 1


def _cbor_bytes_head(n: int) -> bytes:
    if n < 24:
        return bytes([0x40 | n])
    if n < 256:
        return b"\x58" + bytes([n])
    return b"\x59" + n.to_bytes(2, "big")


def encode_header(root: CID) -> bytes:
    link = b"\x00" + root.to_bytes()
    body = _HEADER_PREFIX + _cbor_bytes_head(len(link)) + link + _HEADER_SUFFIX
    return varint_encode(len(body)) + body


def decode_header(body: bytes) -> CID:
    if not body.startswith(_HEADER_PREFIX) or not body.endswith(_HEADER_SUFFIX):
        raise CarFormatError("Unsupported CAR header")
    pos = len(_HEADER_PREFIX)
    head = body[pos]
    if head == 0x58:
        ln = body[pos + 1]
        pos += 2
    elif head == 0x59:
        ln = int.from_bytes(body[pos + 1 : pos + 3], "big")
        pos += 3
    elif 0x40 <= head < 0x58:
        ln = head - 0x40
        pos += 1
    else:
        raise CarFormatError("Unsupported CAR header root encoding")
    link = body[pos : pos + ln]
    if len(link) != ln or not link.startswith(b"\x00"):
        raise CarFormatError("Malformed CAR header root link")
    if pos + ln != len(body) - len(_HEADER_SUFFIX):
        raise CarFormatError("Unexpected data in CAR header")
    try:
        root, _ = CID.decode(link, 1)
    except ValueError as exc:
        raise CarFormatError(f"Bad root CID: {exc}") from exc
    return root


def encode_node(obj: Dict[str, Any]) -> bytes:
    """Canonical dag-json: sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def link_to(cid: CID) -> Dict[str, str]:
    return {"/": str(cid)}


def _link_cid(value: Any) -> CID:
    if not isinstance(value, dict) or not isinstance(value.get("/"), str):
        raise CarFormatError(f"Malformed link {value!r}")
    try:
        return CID.parse(value["/"])
    except ValueError as exc:
        raise CarFormatError(str(exc)) from exc


class CarWriter:
    """Streaming writer for one slice; the root CID is patched into the header on finalize."""

    def __init__(self, out_path: str):
        self.out_path = out_path
        self.f: Optional[BinaryIO] = None
        self._seen: Set[bytes] = set()
        self.block_count = 0
        self.size = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        self.f = open(self.out_path, "wb")
        self.f.write(encode_header(_PLACEHOLDER_ROOT))

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def put_block(self, cid: CID, data: bytes) -> CID:
        if self.f is None:
            raise RuntimeError("CAR not open")
        key = cid.to_bytes()
        if key in self._seen:
            return cid
        self._seen.add(key)
        self.f.write(varint_encode(len(key) + len(data)))
        self.f.write(key)
        self.f.write(data)
        self.block_count += 1
        return cid

    def put_raw(self, data: bytes) -> CID:
        return self.put_block(cid_for(data, CODEC_RAW), data)

    def put_node(self, obj: Dict[str, Any]) -> CID:
        data = encode_node(obj)
        return self.put_block(cid_for(data, CODEC_DAG_JSON), data)

    def finalize(self, root: CID):
        if self.f is None:
            raise RuntimeError("CAR not open")
        header = encode_header(root)
        if len(header) != len(encode_header(_PLACEHOLDER_ROOT)):
            raise CarFormatError("Root CID must be a sha2-256 dag-json node")
        self.f.seek(0)
        self.f.write(header)
        self.f.seek(0, 2)
        self.size = self.f.tell()


@dataclass
class BlockRef:
    cid: CID
    offset: int
    length: int


@dataclass
class CarEntry:
    path: str
    kind: int  # 0=file, 1=dir
    size: int = 0
    chunks: List[CID] = field(default_factory=list)
    offset: Optional[int] = None
    file_size: Optional[int] = None

    @property
    def is_part(self) -> bool:
        return self.file_size is not None


class CarReader:
    def __init__(self, path: str):
        self.path = path
        self.f: Optional[BinaryIO] = None
        self.root: Optional[CID] = None
        self.blocks: Dict[bytes, BlockRef] = {}
        self.order: List[BlockRef] = []

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        self.f = open(self.path, "rb")
        try:
            self._load()
        except ValueError as exc:
            self.close()
            raise CarFormatError(f"{self.path}: {exc}") from exc
        except CarFormatError:
            self.close()
            raise

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def _load(self):
        assert self.f is not None
        hlen = read_varint(self.f)
        if hlen is None:
            raise CarFormatError(f"{self.path}: empty file")
        body = self.f.read(hlen)
        if len(body) != hlen:
            raise CarFormatError(f"{self.path}: truncated header")
        self.root = decode_header(body)
        while True:
            ln = read_varint(self.f)
            if ln is None:
                break
            start = self.f.tell()
            head = self.f.read(min(ln, _CID_PEEK))
            cid, pos = CID.decode(head)
            if pos > ln:
                raise CarFormatError(f"{self.path}: truncated section")
            ref = BlockRef(cid=cid, offset=start + pos, length=ln - pos)
            self.f.seek(start + ln)
            self.blocks[cid.to_bytes()] = ref
            self.order.append(ref)
        end = self.f.tell()
        self.f.seek(0, 2)
        if self.f.tell() != end:
            raise CarFormatError(f"{self.path}: section overruns end of file")

    def get(self, cid: CID) -> bytes:
        if self.f is None:
            raise RuntimeError("CAR not open")
        ref = self.blocks.get(cid.to_bytes())
        if ref is None:
            raise BlockNotFoundError(f"{self.path}: block {cid} not found")
        self.f.seek(ref.offset)
        data = self.f.read(ref.length)
        if len(data) != ref.length:
            raise CarFormatError(f"{self.path}: block {cid} truncated")
        return data

    def get_node(self, cid: CID) -> Dict[str, Any]:
        if cid.codec != CODEC_DAG_JSON:
            raise CarFormatError(f"{self.path}: {cid} is not a dag-json node")
        try:
            node = json.loads(self.get(cid).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CarFormatError(f"{self.path}: node {cid} is not valid JSON") from exc
        if not isinstance(node, dict):
            raise CarFormatError(f"{self.path}: node {cid} is not an object")
        return node

    def verify(self) -> bool:
        """Re-hash every sha2-256 block against its CID."""
        for ref in self.order:
            if ref.cid.mh_code != MH_SHA2_256:
                continue
            data = self.get(ref.cid)
            if sha256(data) != ref.cid.digest:
                return False
        return True

    def iter_entries(self) -> Iterator[CarEntry]:
        """Walk the DAG from the root, yielding directories before their contents."""
        if self.root is None:
            raise RuntimeError("CAR not open")
        yield from self._walk_dir(self.get_node(self.root), self.root, "")

    def list(self) -> List[CarEntry]:
        return list(self.iter_entries())

    def _walk_dir(self, node: Dict[str, Any], cid: CID, prefix: str) -> Iterator[CarEntry]:
        links = node.get("Link")
        if not isinstance(links, list):
            raise CarFormatError(f"{self.path}: directory node {cid} has no links")
        for ln in links:
            if not isinstance(ln, dict) or not isinstance(ln.get("Name"), str):
                raise CarFormatError(f"{self.path}: malformed link in {cid}")
            try:
                path = norm_path(f"{prefix}/{ln['Name']}" if prefix else ln["Name"])
            except ValueError as exc:
                raise CarFormatError(f"{self.path}: unsafe entry name {ln['Name']!r}") from exc
            child_cid = _link_cid(ln.get("Hash"))
            child = self.get_node(child_cid)
            if "Chunks" in child:
                yield self._file_entry(path, child)
            else:
                yield CarEntry(path=path, kind=KIND_DIR, size=int(ln.get("Size") or 0))
                yield from self._walk_dir(child, child_cid, path)

    def _file_entry(self, path: str, node: Dict[str, Any]) -> CarEntry:
        chunks = node.get("Chunks")
        if not isinstance(chunks, list):
            raise CarFormatError(f"{self.path}: file node for {path} has no chunk list")
        ent = CarEntry(path=path, kind=KIND_FILE, size=int(node.get("Size") or 0), chunks=[_link_cid(c) for c in chunks])
        if "FileSize" in node:
            ent.offset = int(node.get("Offset") or 0)
            ent.file_size = int(node["FileSize"])
        return ent

    def read_entry(self, entry: CarEntry) -> Iterator[bytes]:
        for c in entry.chunks:
            yield self.get(c)
